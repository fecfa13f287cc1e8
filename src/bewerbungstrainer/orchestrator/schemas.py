"""
Pydantic schemas for the orchestrator module.

Defines data models for scenarios, session configuration, transcript
entries, connectivity results and session outcomes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _now_utc() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def format_time_label(seconds: int) -> str:
    """Format elapsed seconds as a zero-padded ``mm:ss`` label."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


class SessionStatus(str, Enum):
    """Lifecycle states shared by sessions and transports."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDING = "ending"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class TransportKind(str, Enum):
    """The three interchangeable transport strategies."""

    NATIVE = "native"
    PROXY = "proxy"
    HTTP = "http"


class ConnectionMode(str, Enum):
    """Outcome of connection mode detection."""

    WEBSOCKET = "websocket"
    CORPORATE = "corporate"


class TranscriptRole(str, Enum):
    """Speaker of a transcript entry."""

    AGENT = "agent"
    USER = "user"


class TurnPhase(str, Enum):
    """Per-turn sub-state of the HTTP turn transport."""

    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"


@dataclass(frozen=True)
class AudioChunk:
    """A unit of encoded audio, outbound from capture or inbound for playback."""

    data: bytes
    encoding: str
    sample_rate: int = 16000
    channels: int = 1


@dataclass(frozen=True)
class TransportEnd:
    """How a transport session finished."""

    reason: str
    conversation_id: str | None = None
    full_transcript: list[dict[str, Any]] | None = field(default=None)


class TranscriptEntry(BaseModel):
    """One finalized utterance."""

    model_config = ConfigDict(frozen=True)

    role: TranscriptRole = Field(..., description="Who spoke")
    text: str = Field(..., min_length=1, description="Finalized utterance text")
    start_seconds: int = Field(
        default=0,
        ge=0,
        description="Inferred elapsed seconds since session start when the utterance began",
    )
    arrival_timestamp: datetime = Field(
        default_factory=_now_utc,
        description="Wall-clock time the message was received",
    )

    @property
    def time_label(self) -> str:
        """``mm:ss`` label for ``start_seconds``."""
        return format_time_label(self.start_seconds)


class ConnectivityResult(BaseModel):
    """Outcome of a WebSocket reachability probe."""

    success: bool = Field(..., description="Whether the endpoint was reachable")
    latency_ms: int | None = Field(default=None, description="Handshake latency in milliseconds")
    error: str | None = Field(default=None, description="Failure description")
    cached_at: datetime | None = Field(default=None, description="When the result was stored")
    cached: bool = Field(default=False, description="True if served from the probe cache")


class InterviewerProfile(BaseModel):
    """Persona the agent plays during a scenario."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(default="", description="Interviewer name")
    role: str = Field(default="", description="Interviewer role or title")
    company: str = Field(default="", description="Interviewer company")
    properties: str | list[str] = Field(default="", description="Personality traits")
    typical_objections: str | list[str] = Field(
        default="",
        description="Objections the interviewer should raise",
    )
    important_questions: str | list[str] = Field(
        default="",
        description="Questions the interviewer should ask",
    )


class Scenario(BaseModel):
    """A training scenario as delivered by the backend."""

    model_config = ConfigDict(extra="ignore")

    id: int | str | None = Field(default=None, description="Backend scenario id")
    title: str = Field(default="", description="Scenario title")
    description: str = Field(default="", description="Short scenario description")
    content: str = Field(default="", description="Scenario prompt content (may contain HTML)")
    initial_message: str = Field(default="", description="Agent greeting")
    agent_id: str | None = Field(default=None, description="Conversational agent id")
    voice_id: str | None = Field(default=None, description="Voice id for the agent")
    interviewer_profile: InterviewerProfile | None = Field(default=None, description="Agent persona")
    role_type: str | None = Field(default=None, description="Scenario role type")
    user_role_label: str | None = Field(default=None, description="Label for the trainee's role")
    feedback_prompt: str | None = Field(default=None, description="Extra feedback instructions")


class SessionConfig(BaseModel):
    """Everything a transport needs to start a session."""

    agent_id: str = Field(default="", description="Conversational agent id")
    prompt_override: str | None = Field(default=None, description="System prompt override")
    first_message: str | None = Field(default=None, description="First agent message override")
    voice_id: str | None = Field(default=None, description="Voice override, fixed at start")
    dynamic_variables: dict[str, str] = Field(
        default_factory=dict,
        description="Variables substituted by the agent",
    )
    input_device_id: str | int | None = Field(default=None, description="Microphone device")
    scenario: Scenario | None = Field(default=None, description="Source scenario (HTTP turns)")
    variables: dict[str, str] = Field(
        default_factory=dict,
        description="Raw user variables (HTTP turns)",
    )

    @classmethod
    def from_scenario(
        cls,
        scenario: Scenario,
        *,
        variables: dict[str, str] | None = None,
        agent_id: str | None = None,
        default_first_message: str = "",
        default_voice_id: str | None = None,
        input_device_id: str | int | None = None,
    ) -> "SessionConfig":
        """Assemble a session config from a scenario and user variables."""
        from bewerbungstrainer.orchestrator.prompts import (
            build_enhanced_variables,
            build_system_prompt,
            substitute_variables,
        )

        variables = dict(variables or {})
        first_message = substitute_variables(scenario.initial_message, variables) or default_first_message
        return cls(
            agent_id=agent_id or scenario.agent_id or "",
            prompt_override=build_system_prompt(scenario) or None,
            first_message=first_message or None,
            voice_id=scenario.voice_id or default_voice_id,
            dynamic_variables=build_enhanced_variables(variables, scenario.interviewer_profile),
            input_device_id=input_device_id,
            scenario=scenario,
            variables=variables,
        )


class FeedbackResult(BaseModel):
    """Structured feedback returned by the feedback collaborator."""

    feedback: dict[str, Any] = Field(default_factory=dict, description="Parsed feedback")
    audio_analysis: dict[str, Any] | None = Field(default=None, description="Audio-based analysis")
    raw_text: str = Field(default="", description="Unparsed generator output")


class SessionOutcome(BaseModel):
    """Result of the end-of-session flow."""

    session_id: str | None = Field(default=None, description="Local or backend session id")
    conversation_id: str | None = Field(default=None, description="Remote conversation id")
    transport: TransportKind | None = Field(default=None, description="Transport that was used")
    end_reason: str = Field(default="", description="Why the session ended")
    transcript: list[TranscriptEntry] = Field(default_factory=list, description="Final transcript")
    duration_seconds: int = Field(default=0, description="Connected duration")
    feedback: FeedbackResult | None = Field(default=None, description="Generated feedback")
    saved_record_id: str | None = Field(default=None, description="Backend record id")
    audio_available: bool = Field(default=False, description="Whether session audio was retrieved")
    error: str | None = Field(default=None, description="User-facing error, if any")
    finished_at: datetime = Field(default_factory=_now_utc, description="When the flow finished")
