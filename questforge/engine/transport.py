"""
Transport boundary between the pipeline and whatever delivers events to
clients (websocket hub, SSE, polling API).

The orchestrator only ever calls the two emit methods below.
"""

from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Protocol

from questforge.utils.logger import get_logger

logger = get_logger(__name__)


class GameTransport(Protocol):
    async def emit_game_message(self, session_id: str, message: Dict[str, Any]) -> None: ...

    async def emit_state_update(self, session_id: str, patch: Dict[str, Any]) -> None: ...


class NullTransport:
    """Drops every event; used when no client is attached"""

    async def emit_game_message(self, session_id: str, message: Dict[str, Any]) -> None:
        logger.debug(f"[Transport] {session_id} message: {message.get('content', '')[:80]}")

    async def emit_state_update(self, session_id: str, patch: Dict[str, Any]) -> None:
        logger.debug(f"[Transport] {session_id} state: {patch}")


class EventBuffer:
    """
    Keeps the most recent events of each session in memory so clients can
    poll them. Sequence numbers are per session and never reused, so a client
    can ask for everything after the last number it saw.

    At most `max_sessions` sessions are tracked; the one that went longest
    without an event is forgotten first.
    """

    def __init__(self, max_events: int = 200, max_sessions: int = 500):
        self.max_events = max_events
        self.max_sessions = max_sessions
        self._events: "OrderedDict[str, Deque[Dict[str, Any]]]" = OrderedDict()
        self._sequence: Dict[str, int] = {}

    @property
    def tracked_sessions(self) -> int:
        return len(self._events)

    def _push(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        seq = self._sequence.get(session_id, 0) + 1
        self._sequence[session_id] = seq
        events = self._events.setdefault(session_id, deque(maxlen=self.max_events))
        self._events.move_to_end(session_id)
        while len(self._events) > self.max_sessions:
            stale, _ = self._events.popitem(last=False)
            self._sequence.pop(stale, None)
            logger.debug(f"[Transport] Evicted events of session {stale}")
        events.append(
            {
                "seq": seq,
                "type": event_type,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "payload": payload,
            }
        )

    async def emit_game_message(self, session_id: str, message: Dict[str, Any]) -> None:
        self._push(session_id, "message", message)

    async def emit_state_update(self, session_id: str, patch: Dict[str, Any]) -> None:
        self._push(session_id, "state", patch)

    def events(self, session_id: str, after: int = 0) -> List[Dict[str, Any]]:
        return [e for e in self._events.get(session_id, ()) if e["seq"] > after]

    def clear(self, session_id: str) -> None:
        self._events.pop(session_id, None)
        self._sequence.pop(session_id, None)
