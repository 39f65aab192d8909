"""
Database schema definitions using SQLAlchemy.

Each game session is stored as one row that behaves like a document: scalar
columns for the fields the pipeline filters or compares on (status, failure
markers, timestamps) and JSON columns for the rest.
"""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class GameSessionRecord(Base):
    """
    Game session table.

    Attributes:
        id: Unique session identifier (UUID)
        status: Pipeline status, stored verbatim (initializing, generating_world, ...)
        preferences: Player preferences captured at creation
        artifacts: Generated records keyed by artifact kind
        conversation: Append-only list of conversation turns
        stage_errors: Error markers for failing sibling stages
        failure_stage: Stage that escalated the session to failed
        failure_reason: Internal reason recorded with the failure
        created_at: Timestamp when the session was created (UTC)
        last_activity: Timestamp of the last transition, commit or player turn (UTC)
    """

    __tablename__ = "game_sessions"

    id = Column(String, primary_key=True)
    status = Column(String, nullable=False, default="initializing", index=True)
    preferences = Column(JSON, nullable=False, default=dict)
    artifacts = Column(JSON, nullable=False, default=dict)
    conversation = Column(JSON, nullable=False, default=list)
    stage_errors = Column(JSON, nullable=False, default=dict)
    failure_stage = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_activity = Column(DateTime, nullable=False, default=datetime.utcnow)
