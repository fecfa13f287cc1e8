"""
Common contract for conversational transports.

A transport starts a session with the remote agent, carries user audio to it
and emits agent audio, transcripts, interruptions, errors and the end of the
session as events. The orchestrator only ever talks to this interface.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, ClassVar

from bewerbungstrainer.errors import AuthFailed, ConnectionFailed, InvalidTransition, SessionError, Timeout
from bewerbungstrainer.orchestrator.schemas import (
    AudioChunk,
    SessionConfig,
    SessionStatus,
    TransportEnd,
    TransportKind,
)

logger = logging.getLogger(__name__)


class TransportEvent(str, Enum):
    """Events a transport emits."""

    AUDIO_RECEIVED = "audio_received"  # (AudioChunk)
    TRANSCRIPT = "transcript"  # (TranscriptRole, text)
    INTERRUPTION = "interruption"  # ()
    ERROR = "error"  # (SessionError)
    ENDED = "ended"  # (TransportEnd)
    STATUS = "status"  # (SessionStatus)


TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.CONNECTING, SessionStatus.ENDING, SessionStatus.DISCONNECTED}),
    SessionStatus.CONNECTING: frozenset(
        {SessionStatus.CONNECTED, SessionStatus.ENDING, SessionStatus.DISCONNECTED, SessionStatus.ERROR}
    ),
    SessionStatus.CONNECTED: frozenset({SessionStatus.ENDING, SessionStatus.DISCONNECTED, SessionStatus.ERROR}),
    SessionStatus.ENDING: frozenset({SessionStatus.DISCONNECTED}),
    SessionStatus.DISCONNECTED: frozenset(),
    SessionStatus.ERROR: frozenset({SessionStatus.DISCONNECTED}),
}


def _status_code(error: Exception) -> int | None:
    response = getattr(error, "response", None)
    code = getattr(response, "status_code", None)
    if code is None:
        code = getattr(error, "status_code", None)
    return code if isinstance(code, int) else None


def classify_connect_error(error: Exception, timeout: float | None = None) -> SessionError:
    """Map a connection failure onto the session error taxonomy."""
    if isinstance(error, SessionError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return Timeout(f"No handshake within {timeout}s" if timeout else "Handshake timed out")

    code = _status_code(error)
    if code in (401, 403):
        return AuthFailed(f"Connection rejected with HTTP {code}", status_code=code)
    return ConnectionFailed(f"Connection failed: {str(error) or error.__class__.__name__}", status_code=code)


def build_config_override(config: SessionConfig) -> dict[str, Any]:
    """Agent prompt, first message and voice overrides. Only honored at session start."""
    override: dict[str, Any] = {}
    agent: dict[str, Any] = {}
    if config.prompt_override:
        agent["prompt"] = {"prompt": config.prompt_override}
    if config.first_message:
        agent["first_message"] = config.first_message
    if agent:
        override["agent"] = agent
    if config.voice_id:
        override["tts"] = {"voice_id": config.voice_id}
    return override


class TransportStrategy(ABC):
    """Abstract base class for conversational transports."""

    kind: ClassVar[TransportKind]
    # Whether user turns are committed explicitly (push-to-talk) instead of
    # being detected remotely from the audio stream.
    turn_based: ClassVar[bool] = False
    # Encoding expected by ``send_audio``.
    input_encoding: ClassVar[str] = "audio/pcm"
    # Whether the remote service records the conversation under its
    # conversation id, so the backend can archive it after the call.
    remote_recording: ClassVar[bool] = True

    def __init__(self) -> None:
        self._status = SessionStatus.IDLE
        self._handlers: dict[TransportEvent, list[Callable[..., Any]]] = {}
        self._conversation_id: str | None = None
        self._end_result: TransportEnd | None = None

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def is_connected(self) -> bool:
        return self._status == SessionStatus.CONNECTED

    @property
    def is_closing(self) -> bool:
        """True once ``end()`` was requested or the session is over."""
        return self._status in (SessionStatus.ENDING, SessionStatus.DISCONNECTED, SessionStatus.ERROR)

    def on(self, event: TransportEvent | str, handler: Callable[..., Any]) -> Callable[[], None]:
        """
        Subscribe to an event.

        Returns:
            A function that removes the subscription.
        """
        event = TransportEvent(event)
        self._handlers.setdefault(event, []).append(handler)

        def remove() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return remove

    def _emit(self, event: TransportEvent, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"[TRANSPORT] {event.value} handler failed")

    def _set_status(self, status: SessionStatus) -> None:
        if status == self._status:
            return
        if status not in TRANSITIONS[self._status]:
            raise InvalidTransition(self._status.value, status.value)
        logger.debug(f"[TRANSPORT][{self.kind.value.upper()}] {self._status.value} -> {status.value}")
        self._status = status
        self._emit(TransportEvent.STATUS, status)

    def _finish(self, reason: str, full_transcript: list[dict[str, Any]] | None = None) -> TransportEnd:
        """Move to ``disconnected`` once and remember how the session ended."""
        if self._end_result is None:
            self._end_result = TransportEnd(
                reason=reason,
                conversation_id=self._conversation_id,
                full_transcript=full_transcript,
            )
        if self._status != SessionStatus.DISCONNECTED:
            self._set_status(SessionStatus.DISCONNECTED)
        return self._end_result

    @abstractmethod
    async def start(self, config: SessionConfig) -> str | None:
        """
        Establish the session.

        Args:
            config: Agent id, prompt and voice overrides, dynamic variables.

        Returns:
            Conversation handle, or None if ``end()`` was called meanwhile.

        Raises:
            ConnectionFailed: Network or firewall blocked the connection.
            AuthFailed: Bad agent id or credentials.
            Timeout: No handshake within the configured window.
        """
        ...

    @abstractmethod
    async def send_audio(self, chunk: AudioChunk) -> None:
        """Send one chunk of user audio. No-op unless connected."""
        ...

    @abstractmethod
    async def end(self) -> TransportEnd:
        """Close the session. Idempotent."""
        ...

    async def commit_turn(self) -> None:
        """Mark the end of a user utterance. Streaming transports ignore it."""
        return None
