"""
Orchestrator module for managing live session flow and state.

``SessionOrchestrator`` lives in ``orchestrator.session_orchestrator``; it
depends on the transports, which in turn use the schemas exported here.
"""

from bewerbungstrainer.orchestrator.schemas import (
    AudioChunk,
    ConnectivityResult,
    FeedbackResult,
    Scenario,
    SessionConfig,
    SessionOutcome,
    SessionStatus,
    TranscriptEntry,
    TranscriptRole,
    TransportKind,
)
from bewerbungstrainer.orchestrator.session_state import SessionState

__all__ = [
    "AudioChunk",
    "ConnectivityResult",
    "FeedbackResult",
    "Scenario",
    "SessionConfig",
    "SessionOutcome",
    "SessionState",
    "SessionStatus",
    "TranscriptEntry",
    "TranscriptRole",
    "TransportKind",
]
