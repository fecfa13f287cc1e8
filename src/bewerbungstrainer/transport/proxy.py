"""
WebSocket relay transport.

Speaks the conversational agent protocol through a self-hosted relay for
networks where the service's own endpoint is blocked but the relay's domain
is allowed.
"""

import asyncio
import base64
import binascii
import json
import logging
import secrets
import time
from typing import Any, Callable
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from bewerbungstrainer.config import get_settings
from bewerbungstrainer.errors import AuthFailed, ConnectionFailed, ServerError
from bewerbungstrainer.orchestrator.schemas import (
    AudioChunk,
    SessionConfig,
    SessionStatus,
    TranscriptRole,
    TransportEnd,
    TransportKind,
)
from bewerbungstrainer.transport.base import (
    TransportEvent,
    TransportStrategy,
    build_config_override,
    classify_connect_error,
)
from bewerbungstrainer.voice import codecs

logger = logging.getLogger(__name__)

# Service-side diagnostics the client has no use for.
IGNORED_MESSAGE_TYPES = frozenset(
    {
        "internal_vad_score",
        "internal_turn_probability",
        "internal_tentative_agent_response",
        "vad_score",
        "agent_response_correction",
    }
)


def local_conversation_id() -> str:
    return f"proxy_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def build_initiation_message(config: SessionConfig) -> dict[str, Any]:
    return {
        "type": "conversation_initiation_client_data",
        "conversation_config_override": build_config_override(config),
        "dynamic_variables": dict(config.dynamic_variables),
    }


class ProxyTransport(TransportStrategy):
    """Conversational session over a WebSocket relay."""

    kind = TransportKind.PROXY
    input_encoding = codecs.PCM_S16LE

    def __init__(
        self,
        url: str | None = None,
        *,
        connect: Callable[..., Any] | None = None,
        handshake_timeout: float | None = None,
        binary_audio: bool = False,
    ) -> None:
        """
        Initialize the relay transport.

        Args:
            url: Relay endpoint (uses config if not provided).
            connect: WebSocket connect function, ``websockets.connect`` by default.
            handshake_timeout: Seconds allowed for the opening handshake.
            binary_audio: Send user audio as raw binary frames instead of
                base64 ``user_audio_chunk`` messages.
        """
        super().__init__()
        settings = get_settings()
        self._url = url or settings.proxy_ws_url
        self._connect = connect or websockets.connect
        self._timeout = handshake_timeout or settings.handshake_timeout
        self._binary_audio = binary_audio
        self._ws = None
        self._receiver: asyncio.Task | None = None
        self._output_encoding = codecs.pcm_encoding(16000)
        self._pongs_sent = 0

    @property
    def pongs_sent(self) -> int:
        return self._pongs_sent

    def build_url(self, agent_id: str) -> str:
        sep = "&" if "?" in self._url else "?"
        return f"{self._url}{sep}agent_id={quote(agent_id)}"

    async def start(self, config: SessionConfig) -> str | None:
        if not config.agent_id:
            raise AuthFailed("No agent ID provided")

        self._set_status(SessionStatus.CONNECTING)
        self._conversation_id = local_conversation_id()
        url = self.build_url(config.agent_id)
        logger.info(f"[TRANSPORT][PROXY] connecting url={url}")

        try:
            ws = await asyncio.wait_for(self._connect(url, max_size=None), timeout=self._timeout)
        except Exception as e:
            error = classify_connect_error(e, self._timeout)
            if self.is_closing:
                logger.info(f"[TRANSPORT][PROXY] connect failed after end requested: {error.message}")
                return None
            logger.error(f"[TRANSPORT][PROXY] connect failed: {error.message}")
            self._set_status(SessionStatus.ERROR)
            raise error from e

        if self.is_closing:
            await ws.close()
            return None

        self._ws = ws
        try:
            await ws.send(json.dumps(build_initiation_message(config)))
        except ConnectionClosed as e:
            self._ws = None
            self._set_status(SessionStatus.ERROR)
            raise ConnectionFailed(f"Relay closed during initiation: {e}") from e

        self._set_status(SessionStatus.CONNECTED)
        self._receiver = asyncio.get_running_loop().create_task(self._receive_loop(ws))
        logger.info(f"[TRANSPORT][PROXY] connected conversation_id={self._conversation_id}")
        return self._conversation_id

    async def send_audio(self, chunk: AudioChunk) -> None:
        if not self.is_connected or self._ws is None:
            return
        if codecs.base_type(chunk.encoding) != codecs.PCM_S16LE:
            logger.debug(f"[TRANSPORT][PROXY] dropping non-PCM chunk encoding={chunk.encoding}")
            return

        if self._binary_audio:
            payload: str | bytes = chunk.data
        else:
            payload = json.dumps({"user_audio_chunk": base64.b64encode(chunk.data).decode("ascii")})
        try:
            await self._ws.send(payload)
        except ConnectionClosed:
            logger.debug("[TRANSPORT][PROXY] audio chunk dropped, connection closed")

    async def end(self) -> TransportEnd:
        if self._end_result is not None:
            return self._end_result

        if self._status not in (SessionStatus.ERROR, SessionStatus.DISCONNECTED):
            self._set_status(SessionStatus.ENDING)

        receiver, self._receiver = self._receiver, None
        if receiver is not None:
            receiver.cancel()

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close(code=1000, reason="User ended conversation")

        result = self._finish("client_ended")
        self._emit(TransportEvent.ENDED, result)
        return result

    async def _receive_loop(self, ws) -> None:  # noqa: ANN001
        reason = "remote_closed"
        try:
            async for message in ws:
                if isinstance(message, (bytes, bytearray)):
                    self._emit_audio(bytes(message))
                    continue

                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"[TRANSPORT][PROXY] ignoring non-JSON frame: {message[:80]!r}")
                    continue
                if not isinstance(data, dict):
                    continue

                if not await self._dispatch(ws, data):
                    reason = "conversation_end"
                    await ws.close()
                    break
        except ConnectionClosedError as e:
            reason = "connection_lost"
            logger.warning(f"[TRANSPORT][PROXY] connection lost: {e}")
            self._emit(TransportEvent.ERROR, ConnectionFailed(f"Relay connection lost: {e}"))

        if self.is_closing:
            return
        self._ws = None
        self._receiver = None
        logger.info(f"[TRANSPORT][PROXY] session ended reason={reason}")
        result = self._finish(reason)
        self._emit(TransportEvent.ENDED, result)

    async def _dispatch(self, ws, data: dict[str, Any]) -> bool:  # noqa: ANN001
        """Handle one JSON frame. Returns False when the session is over."""
        msg_type = data.get("type")

        if msg_type == "conversation_initiation_metadata":
            meta = data.get("conversation_initiation_metadata_event") or {}
            if meta.get("conversation_id"):
                self._conversation_id = meta["conversation_id"]
            if meta.get("agent_output_audio_format"):
                self._output_encoding = codecs.encoding_from_output_format(meta["agent_output_audio_format"])
            logger.info(f"[TRANSPORT][PROXY] conversation_id={self._conversation_id}")

        elif msg_type == "audio":
            audio_b64 = (data.get("audio_event") or {}).get("audio_base_64") or data.get("audio")
            if audio_b64:
                try:
                    self._emit_audio(base64.b64decode(audio_b64, validate=True))
                except (binascii.Error, ValueError):
                    logger.warning("[TRANSPORT][PROXY] skipping malformed audio frame")

        elif msg_type in ("agent_response", "transcript"):
            text = (data.get("agent_response_event") or {}).get("agent_response") or data.get("text")
            if text:
                self._emit(TransportEvent.TRANSCRIPT, TranscriptRole.AGENT, text)

        elif msg_type == "user_transcript":
            text = (data.get("user_transcription_event") or {}).get("user_transcript") or data.get("text")
            if text:
                self._emit(TransportEvent.TRANSCRIPT, TranscriptRole.USER, text)

        elif msg_type == "interruption":
            logger.info("[TRANSPORT][PROXY] interruption")
            self._emit(TransportEvent.INTERRUPTION)

        elif msg_type == "ping":
            event_id = (data.get("ping_event") or {}).get("event_id", data.get("event_id"))
            try:
                await ws.send(json.dumps({"type": "pong", "event_id": event_id}))
                self._pongs_sent += 1
            except ConnectionClosed:
                logger.debug("[TRANSPORT][PROXY] pong dropped, connection closed")

        elif msg_type == "error":
            message = data.get("message") or data.get("error_message") or "Unknown relay error"
            logger.warning(f"[TRANSPORT][PROXY] server error: {message}")
            self._emit(TransportEvent.ERROR, ServerError(message))

        elif msg_type == "conversation_end":
            return False

        elif msg_type in IGNORED_MESSAGE_TYPES:
            pass

        else:
            logger.debug(f"[TRANSPORT][PROXY] unhandled message type={msg_type}")

        return True

    def _emit_audio(self, data: bytes) -> None:
        if not data:
            return
        rate = 16000
        if "rate=" in self._output_encoding:
            rate = int(self._output_encoding.rsplit("rate=", 1)[1])
        self._emit(
            TransportEvent.AUDIO_RECEIVED,
            AudioChunk(data=data, encoding=self._output_encoding, sample_rate=rate),
        )
