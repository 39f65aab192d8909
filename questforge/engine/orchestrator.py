"""
Pipeline orchestrator: turns a requested session into a playable world.

The orchestrator interprets the declarative stage graph from
`questforge.engine.stages`. It walks the macro-states in order; inside a
macro-state it runs every stage whose inputs are committed as one concurrent
wave, commits each successful artifact immediately, and advances the session
status only once every sibling of the macro-state has committed. Because the
next step is always derived from which artifacts are present, re-invoking the
pipeline after a crash or cancellation picks up where it stopped without
repeating provider calls.
"""

import asyncio
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from questforge import prompts
from questforge.config import Settings
from questforge.db.manager import DatabaseManager
from questforge.engine.parser import ContentParser
from questforge.engine.stages import (
    MACRO_SEQUENCE,
    STAGES,
    StageDescriptor,
    StageResult,
    execute_stage,
    next_macro_state,
    stages_for,
    validate_stage_graph,
)
from questforge.engine.transport import GameTransport, NullTransport
from questforge.errors import (
    ContentError,
    DependencyMissing,
    SessionNotActive,
    SessionNotResumable,
    StageFailed,
)
from questforge.schemas.session import ConversationTurn, GameSession, SessionStatus
from questforge.utils.logger import get_logger

logger = get_logger(__name__)


def derive_status(
    artifacts: Mapping[str, Any], stages: Tuple[StageDescriptor, ...] = STAGES
) -> SessionStatus:
    """The macro-state a session is in, judged only by its committed artifacts"""
    for macro_state in MACRO_SEQUENCE:
        for stage in stages:
            if stage.macro_state == macro_state and stage.produces not in artifacts:
                return macro_state
    return SessionStatus.ACTIVE


class PipelineOrchestrator:
    """
    Drives the generation state machine for game sessions.

    Attributes:
        store: Session state store adapter
        gateway: Provider gateway shared by every session
        transport: Receives progress messages and state patches
        stage_max_attempts: Attempts per stage before the session fails
    """

    def __init__(
        self,
        store: DatabaseManager,
        gateway: Any,
        transport: Optional[GameTransport] = None,
        stage_max_attempts: int = 3,
        stages: Tuple[StageDescriptor, ...] = STAGES,
    ):
        validate_stage_graph(stages)
        self.store = store
        self.gateway = gateway
        self.transport: GameTransport = transport or NullTransport()
        self.stage_max_attempts = stage_max_attempts
        self.stages = tuple(stages)
        self.stages_by_name = {stage.name: stage for stage in self.stages}
        self.parser = ContentParser()
        self._running: Set[str] = set()
        self._cancel_requested: Set[str] = set()

    @classmethod
    def from_settings(
        cls,
        store: DatabaseManager,
        gateway: Any,
        config: Settings,
        transport: Optional[GameTransport] = None,
    ) -> "PipelineOrchestrator":
        return cls(
            store,
            gateway,
            transport=transport,
            stage_max_attempts=config.stage_max_attempts,
        )

    # ==================== Public operations ====================

    async def create_session(
        self, preferences: Optional[Dict[str, Any]] = None
    ) -> GameSession:
        """Create a session record in `initializing` with an empty conversation"""
        session = GameSession(id=str(uuid.uuid4()), preferences=dict(preferences or {}))
        session = self.store.create_session(session)
        logger.info(
            f"Created session {session.id}",
            extra={"component": "Pipeline", "session_id": session.id},
        )
        await self._emit_state(session.id, {"status": session.status.value})
        return session

    async def run(self, session_id: str) -> GameSession:
        """Run the pipeline for a session until it is active or failed"""
        return await self.resume(session_id)

    async def resume(self, session_id: str) -> GameSession:
        """
        Continue the pipeline from the first stage whose artifact is missing.

        Active and completed sessions are returned unchanged.

        Raises:
            SessionNotResumable: The session failed (use retry) or its
                pipeline is already running
            DependencyMissing: The stage graph was violated
        """
        session = self.store.get_session(session_id)
        if session.status in (SessionStatus.ACTIVE, SessionStatus.COMPLETED):
            return session
        if session.status == SessionStatus.FAILED:
            raise SessionNotResumable(
                f"Session {session_id} failed at {session.failure_stage}; retry it instead"
            )
        if session_id in self._running:
            raise SessionNotResumable(f"Session {session_id} pipeline is already running")

        self._running.add(session_id)
        try:
            return await self._drive(session)
        finally:
            self._running.discard(session_id)
            self._cancel_requested.discard(session_id)

    async def retry(self, session_id: str) -> GameSession:
        """
        Reset a failed session to the macro-state of its failed stage and
        resume. Committed artifacts are kept, except ones that no longer
        validate: those are dropped together with every artifact built on
        them, and the session restarts at the earliest macro-state missing
        an artifact.
        """
        session = self.store.get_session(session_id)
        if session.status != SessionStatus.FAILED:
            raise SessionNotResumable(
                f"Only failed sessions can be retried (status: {session.status.value})"
            )

        invalid = self._invalid_artifacts(session)
        dropped = self._dependents_of(invalid) & set(session.artifacts)
        artifacts = {k: v for k, v in session.artifacts.items() if k not in dropped}
        stage = self.stages_by_name.get(session.failure_stage or "")
        if stage and not dropped:
            target = stage.macro_state
        else:
            target = derive_status(artifacts, self.stages)
        if dropped:
            logger.warning(
                f"Dropping artifacts of session {session_id} for regeneration: "
                f"{', '.join(sorted(dropped))}",
                extra={"component": "Pipeline", "session_id": session_id},
            )

        fields: Dict[str, Any] = {"artifacts": artifacts}
        if "introduction" in dropped:
            fields["conversation"] = []

        reset = self.store.transition_status(
            session_id,
            SessionStatus.FAILED,
            target,
            failure_stage=None,
            failure_reason=None,
            stage_errors={},
            **fields,
        )
        if not reset:
            raise SessionNotResumable(f"Session {session_id} changed while retrying")

        logger.info(
            f"Retrying session {session_id} from {target.value}",
            extra={"component": "Pipeline", "session_id": session_id},
        )
        await self._emit_state(session_id, {"status": target.value, "retry": True})
        return await self.resume(session_id)

    def cancel(self, session_id: str) -> bool:
        """
        Ask a running pipeline to stop at the next stage boundary.

        Returns:
            True if a running pipeline will observe the request
        """
        if session_id not in self._running:
            return False
        self._cancel_requested.add(session_id)
        logger.info(
            f"Cancellation requested for session {session_id}",
            extra={"component": "Pipeline", "session_id": session_id},
        )
        return True

    def is_running(self, session_id: str) -> bool:
        return session_id in self._running

    async def end_session(self, session_id: str) -> GameSession:
        """Mark an active session as completed"""
        ended = self.store.transition_status(
            session_id, SessionStatus.ACTIVE, SessionStatus.COMPLETED
        )
        if not ended:
            session = self.store.get_session(session_id)
            raise SessionNotActive(
                f"Session {session_id} is {session.status.value}, not active"
            )
        await self._emit_state(session_id, {"status": SessionStatus.COMPLETED.value})
        return self.store.get_session(session_id)

    async def handle_player_turn(self, session_id: str, text: str) -> GameSession:
        """
        Accept a player turn: append it to the conversation log and refresh
        the session's last activity. Producing the reply is up to the turn
        handler listening on the transport.
        """
        session = self.store.get_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActive(
                f"Session {session_id} is {session.status.value}, not active"
            )
        session = self.store.append_turn(
            session_id, ConversationTurn(role="user", content=text)
        )
        await self._emit_state(
            session_id,
            {
                "last_activity": session.last_activity.isoformat(),
                "turns": len(session.conversation),
            },
        )
        return session

    # ==================== State machine ====================

    async def _drive(self, session: GameSession) -> GameSession:
        session = self._reconcile(session)

        while session.status.is_generating:
            if self._cancelled(session.id):
                return await self._stop_for_cancel(session)

            if session.status == SessionStatus.INITIALIZING:
                session = await self._advance(session, SessionStatus.GENERATING_WORLD)
                continue

            macro_state = session.status
            await self._emit_progress(session.id, macro_state)
            try:
                session, finished = await self._run_macro_state(session, macro_state)
            except StageFailed as e:
                return await self._fail(session.id, e.stage, e.reason)
            except DependencyMissing as e:
                logger.critical(
                    f"Internal consistency alarm: {e}",
                    extra={
                        "component": "Pipeline",
                        "session_id": session.id,
                        "stage": e.stage,
                        "alarm": "internal_consistency",
                    },
                )
                raise

            if not finished:
                return await self._stop_for_cancel(session)
            if session.status == macro_state:
                session = await self._advance(session, next_macro_state(macro_state))

        return session

    def _invalid_artifacts(self, session: GameSession) -> Dict[str, ContentError]:
        invalid: Dict[str, ContentError] = {}
        for kind, stored in session.artifacts.items():
            try:
                self.parser.revalidate(kind, stored)
            except ContentError as e:
                invalid[kind] = e
        return invalid

    def _dependents_of(self, kinds: Iterable[str]) -> Set[str]:
        """The given kinds plus every kind produced from them, transitively"""
        closure = set(kinds)
        grew = bool(closure)
        while grew:
            grew = False
            for stage in self.stages:
                if stage.produces not in closure and closure.intersection(stage.requires):
                    closure.add(stage.produces)
                    grew = True
        return closure

    def _reconcile(self, session: GameSession) -> GameSession:
        """
        Re-validate committed artifacts and re-derive the status from them,
        repairing a status that lags behind its artifacts after a crash.
        """
        for kind, e in self._invalid_artifacts(session).items():
            producer = next((s for s in self.stages if s.produces == kind), None)
            stage_name = producer.name if producer else kind
            logger.error(
                f"Committed artifact {kind} of session {session.id} is invalid: {e}",
                extra={"component": "Pipeline", "session_id": session.id},
            )
            return self.store.update_session(
                session.id,
                {
                    "status": SessionStatus.FAILED,
                    "failure_stage": stage_name,
                    "failure_reason": f"stored artifact failed re-validation ({e})",
                },
            )

        if session.status == SessionStatus.INITIALIZING and not session.artifacts:
            return session

        derived = derive_status(session.artifacts, self.stages)
        if derived != session.status:
            logger.warning(
                f"Session {session.id} status {session.status.value} does not match "
                f"its artifacts; resuming at {derived.value}",
                extra={"component": "Pipeline", "session_id": session.id},
            )
            patch: Dict[str, Any] = {"status": derived}
            if derived == SessionStatus.ACTIVE and not session.conversation:
                patch["conversation"] = [self._introduction_turn(session.artifacts)]
            session = self.store.update_session(session.id, patch)
        return session

    async def _run_macro_state(
        self, session: GameSession, macro_state: SessionStatus
    ) -> Tuple[GameSession, bool]:
        """
        Run the pending stages of one macro-state in dependency waves.

        Returns:
            The updated session and whether the macro-state finished (False
            when cancelled between waves)
        """
        pending = [
            s
            for s in stages_for(macro_state, self.stages)
            if s.produces not in session.artifacts
        ]

        failures: List[StageFailed] = []
        while pending:
            if self._cancelled(session.id):
                return session, False

            ready = [s for s in pending if s.is_ready(session.artifacts)]
            if not ready:
                if failures:
                    # Remaining stages depend on a failed sibling
                    break
                stage = pending[0]
                raise DependencyMissing(stage.name, stage.missing_inputs(session.artifacts))

            artifacts = dict(session.artifacts)
            outcomes = await asyncio.gather(
                *(
                    execute_stage(
                        stage,
                        artifacts,
                        session.preferences,
                        self.gateway,
                        max_attempts=self.stage_max_attempts,
                    )
                    for stage in ready
                ),
                return_exceptions=True,
            )

            if self._cancelled(session.id):
                logger.info(
                    f"Discarding {len(ready)} stage result(s) of cancelled session {session.id}",
                    extra={"component": "Pipeline", "session_id": session.id},
                )
                return session, False

            for stage, outcome in zip(ready, outcomes):
                if isinstance(outcome, StageResult):
                    session = await self._commit(session, outcome)
                elif isinstance(outcome, StageFailed):
                    failures.append(outcome)
                    session = self._mark_stage_error(session, outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome

            pending = [s for s in pending if s not in ready]

        if failures:
            raise failures[0]
        return session, True

    def _mark_stage_error(self, session: GameSession, failure: StageFailed) -> GameSession:
        logger.error(
            f"[Pipeline] {failure}",
            extra={"component": "Pipeline", "session_id": session.id, "stage": failure.stage},
        )
        markers = dict(session.stage_errors)
        markers[failure.stage] = failure.reason
        return self.store.update_session(session.id, {"stage_errors": markers})

    async def _commit(self, session: GameSession, result: StageResult) -> GameSession:
        """Persist one stage artifact; artifacts are never overwritten"""
        current = self.store.get_session(session.id)
        if result.produces in current.artifacts:
            logger.warning(
                f"Artifact {result.produces} already committed for session "
                f"{session.id}; discarding duplicate from {result.stage}",
                extra={"component": "Pipeline", "session_id": session.id},
            )
            return current

        fields: Dict[str, Any] = {}
        if result.stage in current.stage_errors:
            fields["stage_errors"] = {
                k: v for k, v in current.stage_errors.items() if k != result.stage
            }

        if result.produces == "introduction":
            # Introduction, conversation seed and activation land together
            artifacts = {**current.artifacts, "introduction": result.artifact}
            fields["conversation"] = [self._introduction_turn(artifacts)]
            fields["status"] = result.success_status

        session = self.store.commit_artifact(
            session.id, result.produces, result.artifact, **fields
        )
        logger.info(
            f"Committed {result.produces} for session {session.id} "
            f"({result.attempts} attempt(s))",
            extra={"component": "Pipeline", "session_id": session.id, "stage": result.stage},
        )
        await self._emit_state(session.id, {"artifact": result.produces})

        if session.status == SessionStatus.ACTIVE:
            intro = session.conversation[0]
            await self._emit_message(
                session.id,
                {"role": intro.role, "content": intro.content, "metadata": intro.metadata},
            )
            await self._emit_state(session.id, {"status": SessionStatus.ACTIVE.value})
        return session

    async def _advance(self, session: GameSession, new_status: SessionStatus) -> GameSession:
        moved = self.store.transition_status(session.id, session.status, new_status)
        if not moved:
            logger.warning(
                f"Session {session.id} changed concurrently; expected {session.status.value}",
                extra={"component": "Pipeline", "session_id": session.id},
            )
            return self.store.get_session(session.id)
        logger.info(
            f"Session {session.id}: {session.status.value} -> {new_status.value}",
            extra={"component": "Pipeline", "session_id": session.id},
        )
        await self._emit_state(session.id, {"status": new_status.value})
        return self.store.get_session(session.id)

    async def _fail(self, session_id: str, stage: str, reason: str) -> GameSession:
        session = self.store.update_session(
            session_id,
            {
                "status": SessionStatus.FAILED,
                "failure_stage": stage,
                "failure_reason": reason,
            },
        )
        logger.error(
            f"Session {session_id} failed at {stage}: {reason}",
            extra={"component": "Pipeline", "session_id": session_id, "stage": stage},
        )
        await self._emit_message(
            session_id, {"role": "system", "content": prompts.GENERATION_FAILED_MESSAGE}
        )
        await self._emit_state(
            session_id, {"status": SessionStatus.FAILED.value, "failure_stage": stage}
        )
        return session

    async def _stop_for_cancel(self, session: GameSession) -> GameSession:
        logger.info(
            f"Session {session.id} paused at {session.status.value} after cancellation",
            extra={"component": "Pipeline", "session_id": session.id},
        )
        await self._emit_state(
            session.id, {"status": session.status.value, "cancelled": True}
        )
        return self.store.get_session(session.id)

    # ==================== Helpers ====================

    def _cancelled(self, session_id: str) -> bool:
        return session_id in self._cancel_requested

    @staticmethod
    def _introduction_turn(artifacts: Mapping[str, Any]) -> ConversationTurn:
        intro = artifacts["introduction"]
        return ConversationTurn(
            role="assistant",
            content=intro["narrative"],
            metadata={
                "kind": "introduction",
                "suggested_actions": intro.get("suggested_actions", []),
            },
        )

    async def _emit_progress(self, session_id: str, macro_state: SessionStatus) -> None:
        message = prompts.PROGRESS_MESSAGES.get(macro_state.value)
        if message:
            await self._emit_message(
                session_id,
                {"role": "system", "content": message, "metadata": {"progress": True}},
            )

    async def _emit_message(self, session_id: str, message: Dict[str, Any]) -> None:
        try:
            await self.transport.emit_game_message(session_id, message)
        except Exception as e:
            logger.warning(
                f"Transport failed to deliver message for {session_id}: {e}",
                exc_info=True,
            )

    async def _emit_state(self, session_id: str, patch: Dict[str, Any]) -> None:
        try:
            await self.transport.emit_state_update(session_id, patch)
        except Exception as e:
            logger.warning(
                f"Transport failed to deliver state update for {session_id}: {e}",
                exc_info=True,
            )
