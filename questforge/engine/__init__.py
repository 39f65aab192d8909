"""
Core engine components for the questforge session generator
"""

from .orchestrator import PipelineOrchestrator, derive_status
from .parser import ContentParser
from .stages import STAGES, StageDescriptor, StageResult, execute_stage
from .transport import EventBuffer, GameTransport, NullTransport

__all__ = [
    "PipelineOrchestrator",
    "derive_status",
    "ContentParser",
    "STAGES",
    "StageDescriptor",
    "StageResult",
    "execute_stage",
    "EventBuffer",
    "GameTransport",
    "NullTransport",
]
