"""
HTTP turn-based transport.

No persistent connection: each user utterance is recorded completely,
encoded, base64'd and posted as one turn. The response carries the
interviewer's text and a URL to its synthesized audio. Works wherever plain
HTTPS does.
"""

import asyncio
import base64
import logging
from typing import Any

import numpy as np

from bewerbungstrainer.config import get_settings
from bewerbungstrainer.errors import ConnectionFailed, SessionError
from bewerbungstrainer.orchestrator.prompts import substitute_variables
from bewerbungstrainer.orchestrator.schemas import (
    AudioChunk,
    SessionConfig,
    SessionStatus,
    TranscriptRole,
    TransportEnd,
    TransportKind,
    TurnPhase,
)
from bewerbungstrainer.services.backend import BackendClient
from bewerbungstrainer.transport.base import TransportEvent, TransportStrategy, classify_connect_error
from bewerbungstrainer.voice import codecs

logger = logging.getLogger(__name__)


class HttpTurnTransport(TransportStrategy):
    """Push-to-talk conversation over discrete HTTP requests."""

    kind = TransportKind.HTTP
    turn_based = True
    remote_recording = False
    input_encoding = codecs.PCM_S16LE

    def __init__(
        self,
        backend: BackendClient,
        *,
        sample_rate: int | None = None,
        should_end_delay: float | None = None,
        request_timeout: float | None = None,
        encoding: str | None = None,
    ) -> None:
        """
        Initialize the turn transport.

        Args:
            backend: REST client for the turn endpoints.
            sample_rate: Rate of the PCM chunks passed to ``send_audio``.
            should_end_delay: Seconds to let the closing reply play before
                ending once the interviewer concluded.
            request_timeout: Upper bound for the start request.
            encoding: Container used for uploaded utterances; probed when omitted.
        """
        super().__init__()
        settings = get_settings()
        self._backend = backend
        self._sample_rate = sample_rate or settings.sample_rate
        self._should_end_delay = settings.should_end_delay if should_end_delay is None else should_end_delay
        self._request_timeout = request_timeout or settings.handshake_timeout
        self._encoding = encoding
        self._session_id: str | None = None
        self._phase = TurnPhase.IDLE
        self._buffer: list[bytes] = []
        self._turns = 0
        self._pending_end: asyncio.Task | None = None

    @property
    def session_id(self) -> str | None:
        """Server-issued id threaded through every turn."""
        return self._session_id

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    @property
    def turns_sent(self) -> int:
        return self._turns

    async def start(self, config: SessionConfig) -> str | None:
        self._set_status(SessionStatus.CONNECTING)
        scenario = config.scenario
        profile = scenario.interviewer_profile if scenario else None
        initial_message = substitute_variables(
            (scenario.initial_message if scenario else "") or config.first_message or "",
            config.variables,
        )

        try:
            data = await asyncio.wait_for(
                self._backend.start_corporate_interview(
                    scenario_id=scenario.id if scenario else None,
                    scenario_content=(scenario.content if scenario else "") or config.prompt_override or "",
                    initial_message=initial_message,
                    variables=config.variables or dict(config.dynamic_variables),
                    interviewer_profile=profile.model_dump() if profile else None,
                ),
                timeout=self._request_timeout,
            )
        except Exception as e:
            error = classify_connect_error(e, self._request_timeout)
            if not error.terminal:
                # A rejected start counts as a failed connection.
                error = ConnectionFailed(f"Interview start failed: {error.message}", status_code=error.status_code)
            if self.is_closing:
                return None
            logger.error(f"[TRANSPORT][HTTP] start failed: {error.message}")
            self._set_status(SessionStatus.ERROR)
            raise error from e

        if self.is_closing:
            return None

        self._session_id = str(data.get("session_id") or "")
        if not self._session_id:
            self._set_status(SessionStatus.ERROR)
            raise ConnectionFailed("Interview start returned no session_id")

        self._conversation_id = self._session_id
        self._set_status(SessionStatus.CONNECTED)
        logger.info(f"[TRANSPORT][HTTP] connected session_id={self._session_id}")

        greeting = data.get("initial_message") or {}
        await self._deliver_reply(greeting.get("text"), greeting.get("audio_url"))
        return self._session_id

    async def send_audio(self, chunk: AudioChunk) -> None:
        if not self.is_connected:
            return
        if self._phase == TurnPhase.PROCESSING:
            logger.debug("[TRANSPORT][HTTP] dropping audio while a turn is processing")
            return
        if codecs.base_type(chunk.encoding) != codecs.PCM_S16LE:
            logger.debug(f"[TRANSPORT][HTTP] dropping non-PCM chunk encoding={chunk.encoding}")
            return
        self._phase = TurnPhase.RECORDING
        self._buffer.append(chunk.data)

    async def commit_turn(self) -> None:
        """Upload the buffered utterance as one turn."""
        if not self.is_connected or self._phase != TurnPhase.RECORDING or not self._buffer:
            return

        pcm = b"".join(self._buffer)
        self._buffer = []
        self._phase = TurnPhase.PROCESSING
        try:
            audio = await asyncio.to_thread(self._encode_utterance, pcm)
            await self._process_turn(audio, end_conversation=False)
        finally:
            if self._phase == TurnPhase.PROCESSING:
                self._phase = TurnPhase.IDLE

    def _encode_utterance(self, pcm: bytes) -> str:
        encoding = self._encoding or codecs.best_supported_encoding()
        samples = np.frombuffer(pcm[: len(pcm) - len(pcm) % 2], dtype="<i2")
        data = codecs.encode(samples, encoding, self._sample_rate)
        mime = encoding.split(";", 1)[0]
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"

    async def _process_turn(self, audio_base64: str, *, end_conversation: bool) -> dict[str, Any] | None:
        session_id = self._session_id
        self._turns += 1
        logger.info(f"[TRANSPORT][HTTP] turn #{self._turns} end={end_conversation}")
        try:
            data = await self._backend.corporate_turn(
                session_id=session_id or "",
                audio_base64=audio_base64,
                end_conversation=end_conversation,
            )
        except SessionError as e:
            if self.is_closing and not end_conversation:
                return None
            logger.warning(f"[TRANSPORT][HTTP] turn failed: {e.message}")
            if not end_conversation:
                self._emit(TransportEvent.ERROR, e)
            return None

        # end() may have run while the request was in flight.
        if self.is_closing and not end_conversation:
            return None

        user_text = data.get("user_transcript")
        if user_text and not end_conversation:
            self._emit(TransportEvent.TRANSCRIPT, TranscriptRole.USER, user_text)

        if data.get("conversation_ended"):
            if not end_conversation:
                result = self._finish("conversation_ended", data.get("full_transcript"))
                self._emit(TransportEvent.ENDED, result)
            return data

        reply = data.get("interviewer_response") or {}
        await self._deliver_reply(reply.get("text"), reply.get("audio_url"))

        if data.get("should_end") and not end_conversation and self._pending_end is None:
            logger.info(f"[TRANSPORT][HTTP] interviewer concluded, ending in {self._should_end_delay}s")
            self._pending_end = asyncio.get_running_loop().create_task(self._end_after_delay())
        return data

    async def _deliver_reply(self, text: str | None, audio_url: str | None) -> None:
        if self.is_closing:
            return
        if text:
            self._emit(TransportEvent.TRANSCRIPT, TranscriptRole.AGENT, text)
        if not audio_url:
            return

        try:
            data, content_type = await self._backend.fetch_audio_url(audio_url)
        except SessionError as e:
            logger.warning(f"[TRANSPORT][HTTP] reply audio unavailable: {e.message}")
            return
        if self.is_closing or not data:
            return
        # A new reply supersedes whatever is still playing.
        self._emit(TransportEvent.INTERRUPTION)
        self._emit(TransportEvent.AUDIO_RECEIVED, AudioChunk(data=data, encoding=content_type))

    async def _end_after_delay(self) -> None:
        await asyncio.sleep(self._should_end_delay)
        if self.is_closing:
            return
        self._pending_end = None
        result = self._finish("agent_concluded")
        self._emit(TransportEvent.ENDED, result)

    async def end(self) -> TransportEnd:
        if self._end_result is not None:
            return self._end_result

        was_connected = self.is_connected
        if self._status not in (SessionStatus.ERROR, SessionStatus.DISCONNECTED):
            self._set_status(SessionStatus.ENDING)

        pending, self._pending_end = self._pending_end, None
        if pending is not None:
            pending.cancel()
        self._buffer = []

        full_transcript = None
        if was_connected and self._session_id:
            # The closing turn lets the backend finalize its record.
            data = await self._process_turn("", end_conversation=True)
            if data:
                full_transcript = data.get("full_transcript")

        self._phase = TurnPhase.IDLE
        result = self._finish("client_ended", full_transcript)
        self._emit(TransportEvent.ENDED, result)
        return result
