"""
Session schema definitions: status values, conversation turns and the
session aggregate that the pipeline reads and writes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Persisted session status; clients poll these values verbatim"""

    INITIALIZING = "initializing"
    GENERATING_WORLD = "generating_world"
    GENERATING_CHARACTER = "generating_character"
    GENERATING_NPCS = "generating_npcs"
    GENERATING_QUESTS = "generating_quests"
    GENERATING_ITEMS = "generating_items"
    FINALIZING = "finalizing"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_generating(self) -> bool:
        return self not in (
            SessionStatus.ACTIVE,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
        )


Role = Literal["system", "user", "assistant", "character"]


class ConversationTurn(BaseModel):
    """A single entry in a session's append-only conversation log"""

    timestamp: datetime = Field(default_factory=utcnow)
    role: Role
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionPreferences(BaseModel):
    """Player preferences captured when a session is requested"""

    theme: str = Field(default="high fantasy", description="Genre or theme")
    tone: Optional[str] = Field(None, description="Desired tone (dark, light, ...)")
    character_name: Optional[str] = Field(None, description="Preferred hero name")
    character_class: Optional[str] = Field(None, description="Preferred hero class")
    difficulty: str = Field(default="balanced")

    class Config:
        extra = "allow"


class GameSession(BaseModel):
    """Root aggregate for one game instance"""

    id: str
    status: SessionStatus = SessionStatus.INITIALIZING
    preferences: Dict[str, Any] = Field(default_factory=dict)
    artifacts: Dict[str, Any] = Field(default_factory=dict)
    conversation: List[ConversationTurn] = Field(default_factory=list)
    stage_errors: Dict[str, str] = Field(
        default_factory=dict, description="Error markers for failing sibling stages"
    )
    failure_stage: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
