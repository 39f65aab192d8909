"""
Exception hierarchy for the session generation pipeline.

Provider and content errors are retryable inside a stage; StageFailed is what
the orchestrator sees once a stage has used up its attempts. DependencyMissing
is an internal-consistency failure and is never retried.
"""

from typing import List, Optional


class QuestForgeError(Exception):
    """Base class for all questforge errors"""


class GenerationError(QuestForgeError):
    """Base class for failures that happen while generating content"""


# ==================== Provider errors ====================


class ProviderError(GenerationError):
    """The generative-content provider could not produce text"""


class ProviderTransientError(ProviderError):
    """Timeout, rate limit or server-side failure; the gateway retries these"""


class ProviderUnavailable(ProviderError):
    """Transient provider failures persisted past the gateway retry bound"""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ProviderRejected(ProviderError):
    """The provider refused the request (auth, malformed request); not retried"""


# ==================== Content errors ====================


class ContentError(GenerationError):
    """Generated text could not be turned into a valid record"""

    def __init__(self, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.kind = kind


class ContentMalformed(ContentError):
    """No machine-readable payload could be recovered from the text"""


class ContentInvalid(ContentError):
    """The payload parsed but breaks the schema rules for its kind"""

    def __init__(self, kind: str, violations: List[str]):
        super().__init__(kind, "; ".join(violations))
        self.violations = violations


# ==================== Stage and session errors ====================


class StageFailed(GenerationError):
    """A stage exhausted its attempts or hit a non-retryable provider error"""

    def __init__(
        self,
        stage: str,
        reason: str,
        attempts: int,
        cause: Optional[Exception] = None,
    ):
        super().__init__(f"Stage {stage} failed after {attempts} attempt(s): {reason}")
        self.stage = stage
        self.reason = reason
        self.attempts = attempts
        self.cause = cause


class DependencyMissing(QuestForgeError):
    """A stage was invoked before the artifacts it consumes were committed"""

    def __init__(self, stage: str, missing: List[str]):
        super().__init__(
            f"Stage {stage} invoked without required artifacts: {', '.join(missing)}"
        )
        self.stage = stage
        self.missing = missing


class SessionNotFound(QuestForgeError):
    """No session exists with the requested id"""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionNotResumable(QuestForgeError):
    """The session is in a state the requested operation cannot start from"""


class SessionNotActive(QuestForgeError):
    """Player turns are only accepted while a session is active"""
