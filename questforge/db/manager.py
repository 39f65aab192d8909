"""
Database manager for questforge.

This module is the session state store adapter used by the pipeline: create,
read and patch session documents, merge single artifacts, append conversation
turns and perform compare-and-set status transitions.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, desc
from sqlalchemy.orm import Session as DBSession
from sqlalchemy.orm import sessionmaker

from questforge.db.schema import Base, GameSessionRecord
from questforge.errors import SessionNotFound
from questforge.schemas.session import ConversationTurn, GameSession, SessionStatus
from questforge.utils.logger import get_logger

logger = get_logger(__name__)

PATCHABLE_FIELDS = {
    "status",
    "artifacts",
    "conversation",
    "stage_errors",
    "failure_stage",
    "failure_reason",
    "last_activity",
}


def _to_db_time(value: datetime) -> datetime:
    """SQLite keeps naive datetimes; store everything as naive UTC"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _serialize_field(name: str, value: Any) -> Any:
    if name == "status" and isinstance(value, SessionStatus):
        return value.value
    if name == "conversation":
        return [
            turn.model_dump(mode="json") if isinstance(turn, ConversationTurn) else turn
            for turn in value
        ]
    if name == "last_activity" and isinstance(value, datetime):
        return _to_db_time(value)
    if name in ("artifacts", "stage_errors"):
        # Fresh containers so SQLAlchemy sees the JSON column as changed
        return dict(value)
    return value


class DatabaseManager:
    """
    Manages database operations for game sessions.

    Writes are last-writer-wins per field. Artifact write-once semantics are
    enforced by the orchestrator, not here. `transition_status` is the only
    conditional write.

    Attributes:
        db_path: Path to the SQLite database file
        engine: SQLAlchemy engine for database connections
        SessionLocal: Factory for creating database sessions
    """

    def __init__(self, db_path: str = "data/questforge.db"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file (created if doesn't exist)
        """
        self.db_path = db_path

        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{db_path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

        logger.info(f"Database initialized at {db_path}")

    # ==================== Helpers ====================

    def _get_record(self, db: DBSession, session_id: str) -> GameSessionRecord:
        record = (
            db.query(GameSessionRecord)
            .filter(GameSessionRecord.id == session_id)
            .first()
        )
        if record is None:
            raise SessionNotFound(session_id)
        return record

    @staticmethod
    def _to_model(record: GameSessionRecord) -> GameSession:
        return GameSession(
            id=record.id,
            status=SessionStatus(record.status),
            preferences=record.preferences or {},
            artifacts=record.artifacts or {},
            conversation=record.conversation or [],
            stage_errors=record.stage_errors or {},
            failure_stage=record.failure_stage,
            failure_reason=record.failure_reason,
            created_at=_from_db_time(record.created_at),
            last_activity=_from_db_time(record.last_activity),
        )

    @staticmethod
    def _apply(record: GameSessionRecord, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch session fields: {', '.join(sorted(unknown))}")
        for name, value in fields.items():
            setattr(record, name, _serialize_field(name, value))
        if "last_activity" not in fields:
            record.last_activity = datetime.utcnow()  # type: ignore

    # ==================== Session Operations ====================

    def create_session(self, session: GameSession) -> GameSession:
        """
        Insert a new session document.

        Args:
            session: The session to store; its id must be unused

        Returns:
            The stored session as read back from the database
        """
        db: DBSession = self.SessionLocal()
        try:
            record = GameSessionRecord(
                id=session.id,
                status=session.status.value,
                preferences=dict(session.preferences),
                artifacts=dict(session.artifacts),
                conversation=_serialize_field("conversation", session.conversation),
                stage_errors=dict(session.stage_errors),
                failure_stage=session.failure_stage,
                failure_reason=session.failure_reason,
                created_at=_to_db_time(session.created_at),
                last_activity=_to_db_time(session.last_activity),
            )
            db.add(record)
            db.commit()
            logger.debug(f"Created session {session.id}")
            return self._to_model(record)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to create session {session.id}: {e}")
            raise
        finally:
            db.close()

    def get_session(self, session_id: str) -> GameSession:
        """
        Retrieve a session by ID.

        Raises:
            SessionNotFound: No session with that id exists
        """
        db: DBSession = self.SessionLocal()
        try:
            return self._to_model(self._get_record(db, session_id))
        finally:
            db.close()

    def update_session(self, session_id: str, patch: Dict[str, Any]) -> GameSession:
        """
        Overwrite the given fields of a session (last writer wins).

        Args:
            session_id: The session's unique identifier
            patch: Field name to new value; see PATCHABLE_FIELDS

        Returns:
            The updated session
        """
        db: DBSession = self.SessionLocal()
        try:
            record = self._get_record(db, session_id)
            self._apply(record, patch)
            db.commit()
            logger.debug(f"Updated session {session_id}: {', '.join(sorted(patch))}")
            return self._to_model(record)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def commit_artifact(
        self, session_id: str, kind: str, artifact: Dict[str, Any], **fields: Any
    ) -> GameSession:
        """
        Merge one artifact into the session's artifact map in a single
        transaction, together with any extra fields (e.g. a status change).
        """
        db: DBSession = self.SessionLocal()
        try:
            record = self._get_record(db, session_id)
            artifacts = dict(record.artifacts or {})
            artifacts[kind] = artifact
            self._apply(record, {**fields, "artifacts": artifacts})
            db.commit()
            logger.debug(f"Committed artifact {kind} for session {session_id}")
            return self._to_model(record)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def append_turn(
        self, session_id: str, turn: ConversationTurn, **fields: Any
    ) -> GameSession:
        """Append a conversation turn, keeping timestamps non-decreasing"""
        db: DBSession = self.SessionLocal()
        try:
            record = self._get_record(db, session_id)
            conversation = list(record.conversation or [])
            if conversation:
                previous = ConversationTurn.model_validate(conversation[-1]).timestamp
                if turn.timestamp < previous:
                    turn = turn.model_copy(update={"timestamp": previous})
            conversation.append(turn.model_dump(mode="json"))
            self._apply(record, {**fields, "conversation": conversation})
            db.commit()
            return self._to_model(record)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def transition_status(
        self,
        session_id: str,
        expected: SessionStatus,
        new: SessionStatus,
        **fields: Any,
    ) -> bool:
        """
        Atomically move a session from `expected` to `new`.

        Returns:
            True if the transition happened, False if the stored status
            was not `expected`

        Raises:
            SessionNotFound: No session with that id exists
        """
        values = {
            name: _serialize_field(name, value)
            for name, value in {**fields, "status": new}.items()
        }
        unknown = set(values) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch session fields: {', '.join(sorted(unknown))}")
        values.setdefault("last_activity", datetime.utcnow())

        db: DBSession = self.SessionLocal()
        try:
            updated = (
                db.query(GameSessionRecord)
                .filter(
                    GameSessionRecord.id == session_id,
                    GameSessionRecord.status == expected.value,
                )
                .update(values, synchronize_session=False)
            )
            db.commit()
            if updated:
                logger.debug(
                    f"Session {session_id} status {expected.value} -> {new.value}"
                )
                return True
            # Distinguish a lost race from a missing session
            self._get_record(db, session_id)
            return False
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_sessions(
        self, limit: int = 50, status: Optional[SessionStatus] = None
    ) -> List[Dict[str, Any]]:
        """
        List sessions with optional status filtering.

        Returns:
            List of session summaries, most recent first
        """
        db: DBSession = self.SessionLocal()
        try:
            query = db.query(GameSessionRecord)
            if status:
                query = query.filter(GameSessionRecord.status == status.value)
            records = (
                query.order_by(desc(GameSessionRecord.created_at)).limit(limit).all()
            )
            return [
                {
                    "id": r.id,
                    "status": r.status,
                    "artifacts": sorted((r.artifacts or {}).keys()),
                    "created_at": _from_db_time(r.created_at).isoformat(),
                    "last_activity": _from_db_time(r.last_activity).isoformat(),
                }
                for r in records
            ]
        finally:
            db.close()

    def delete_session(self, session_id: str) -> bool:
        """Delete a session; returns False if it did not exist"""
        db: DBSession = self.SessionLocal()
        try:
            deleted = (
                db.query(GameSessionRecord)
                .filter(GameSessionRecord.id == session_id)
                .delete()
            )
            db.commit()
            return bool(deleted)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to delete session {session_id}: {e}")
            raise
        finally:
            db.close()
