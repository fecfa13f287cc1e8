"""
Native conversational SDK transport.

Delegates the WebSocket session to the ElevenLabs SDK. The SDK runs its own
threads, so every callback it fires is marshalled back onto the event loop.
Capture and playback stay with the orchestrator; the SDK sees them through
an audio interface bridge.
"""

import asyncio
import logging
from typing import Any, Callable, Protocol

from bewerbungstrainer.config import get_settings
from bewerbungstrainer.errors import AuthFailed, ConnectionFailed, SessionError
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

# The SDK speaks the first message after a short pause marker.
FIRST_MESSAGE_PREFIX = "... "


class ConversationLike(Protocol):
    def start_session(self) -> None: ...

    def end_session(self) -> None: ...

    def wait_for_session_end(self) -> str | None: ...


ConversationFactory = Callable[[SessionConfig, "AudioBridge", dict[str, Callable[..., None]]], ConversationLike]


class AudioBridge:
    """Audio interface seen by the SDK, backed by the orchestrator's capture and playback."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_output: Callable[[bytes], None],
        on_interrupt: Callable[[], None],
        on_ready: Callable[[], None] | None = None,
    ) -> None:
        self._loop = loop
        self._on_output = on_output
        self._on_interrupt = on_interrupt
        self._on_ready = on_ready
        self._input_callback: Callable[[bytes], None] | None = None

    def start(self, input_callback: Callable[[bytes], None]) -> None:
        # The SDK opens the audio interface once its socket is up and the
        # initiation data was sent.
        self._input_callback = input_callback
        if self._on_ready is not None:
            self.post(self._on_ready)

    def stop(self) -> None:
        self._input_callback = None

    def output(self, audio: bytes) -> None:
        self.post(self._on_output, audio)

    def interrupt(self) -> None:
        self.post(self._on_interrupt)

    def push_input(self, audio: bytes) -> None:
        callback = self._input_callback
        if callback is not None:
            callback(audio)

    def post(self, fn: Callable[..., None], *args: Any) -> None:
        """Run ``fn`` on the event loop from an SDK thread."""
        try:
            self._loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            logger.debug("[TRANSPORT][NATIVE] event loop closed, dropping SDK callback")


def _require_sdk():
    try:
        from elevenlabs.client import ElevenLabs  # type: ignore
        from elevenlabs.conversational_ai.conversation import (  # type: ignore
            AudioInterface,
            Conversation,
            ConversationInitiationData,
        )

        return ElevenLabs, AudioInterface, Conversation, ConversationInitiationData
    except Exception as e:  # pragma: no cover
        raise RuntimeError(
            "elevenlabs is required for the native transport. Install Python deps with: pip install -e ."
        ) from e


def sdk_conversation_factory(api_key: str | None = None) -> ConversationFactory:
    """Build conversations with the ElevenLabs SDK."""

    def factory(
        config: SessionConfig,
        bridge: AudioBridge,
        callbacks: dict[str, Callable[..., None]],
    ) -> ConversationLike:
        ElevenLabs, AudioInterface, Conversation, ConversationInitiationData = _require_sdk()

        class _BridgedAudioInterface(AudioInterface):
            def start(self, input_callback):  # noqa: ANN001
                bridge.start(input_callback)

            def stop(self):
                bridge.stop()

            def output(self, audio):  # noqa: ANN001
                bridge.output(audio)

            def interrupt(self):
                bridge.interrupt()

        client = ElevenLabs(api_key=api_key) if api_key else ElevenLabs()
        initiation = ConversationInitiationData(
            conversation_config_override=build_config_override(config),
            dynamic_variables=dict(config.dynamic_variables),
        )
        return Conversation(
            client,
            config.agent_id,
            requires_auth=bool(api_key),
            audio_interface=_BridgedAudioInterface(),
            config=initiation,
            callback_agent_response=callbacks["agent_response"],
            callback_agent_response_correction=callbacks["agent_response_correction"],
            callback_user_transcript=callbacks["user_transcript"],
        )

    return factory


class NativeSdkTransport(TransportStrategy):
    """Conversational session through the first-party SDK."""

    kind = TransportKind.NATIVE
    input_encoding = codecs.PCM_S16LE

    def __init__(
        self,
        *,
        api_key: str | None = None,
        conversation_factory: ConversationFactory | None = None,
        handshake_timeout: float | None = None,
        end_timeout: float = 5.0,
    ) -> None:
        super().__init__()
        settings = get_settings()
        self._factory = conversation_factory or sdk_conversation_factory(api_key or settings.elevenlabs_api_key)
        self._timeout = handshake_timeout or settings.handshake_timeout
        self._end_timeout = end_timeout
        self._conversation: ConversationLike | None = None
        self._bridge: AudioBridge | None = None
        self._watcher: asyncio.Task | None = None
        self._handshake: asyncio.Future | None = None

    async def start(self, config: SessionConfig) -> str | None:
        """
        Open the SDK session and wait for its handshake.

        ``start_session()`` only spawns the SDK thread, so the session counts
        as connected once the SDK opens the audio interface.
        """
        if not config.agent_id:
            raise AuthFailed("No agent ID provided")

        self._set_status(SessionStatus.CONNECTING)
        loop = asyncio.get_running_loop()
        handshake = loop.create_future()
        self._handshake = handshake
        bridge = AudioBridge(loop, self._on_sdk_audio, self._on_sdk_interrupt, self._on_sdk_ready)
        self._bridge = bridge

        if config.first_message and not config.first_message.startswith(FIRST_MESSAGE_PREFIX):
            config = config.model_copy(update={"first_message": FIRST_MESSAGE_PREFIX + config.first_message})

        callbacks: dict[str, Callable[..., None]] = {
            "agent_response": lambda text: bridge.post(self._on_transcript, TranscriptRole.AGENT, text),
            "user_transcript": lambda text: bridge.post(self._on_transcript, TranscriptRole.USER, text),
            "agent_response_correction": lambda original, corrected: logger.debug(
                f"[TRANSPORT][NATIVE] agent response corrected: {original!r} -> {corrected!r}"
            ),
        }

        logger.info(f"[TRANSPORT][NATIVE] starting session agent_id={config.agent_id}")
        try:
            conversation = self._factory(config, bridge, callbacks)
            await asyncio.wait_for(asyncio.to_thread(conversation.start_session), timeout=self._timeout)
        except Exception as e:
            error = classify_connect_error(e, self._timeout)
            if self.is_closing:
                logger.info(f"[TRANSPORT][NATIVE] start failed after end requested: {error.message}")
                return None
            logger.error(f"[TRANSPORT][NATIVE] start failed: {error.message}")
            self._set_status(SessionStatus.ERROR)
            raise error from e

        if self.is_closing:
            # end() ran while the SDK was still starting.
            await asyncio.to_thread(conversation.end_session)
            bridge.stop()
            return None

        self._conversation = conversation
        self._watcher = loop.create_task(self._watch_session(conversation))

        try:
            await asyncio.wait_for(handshake, timeout=self._timeout)
        except Exception as e:
            error = classify_connect_error(e, self._timeout)
            if self.is_closing:
                return None
            logger.error(f"[TRANSPORT][NATIVE] handshake failed: {error.message}")
            self._set_status(SessionStatus.ERROR)
            await self._abandon()
            raise error from e

        if self.is_closing:
            # end() already stopped the conversation.
            return None

        logger.info("[TRANSPORT][NATIVE] connected")
        return self._conversation_id or config.agent_id

    async def send_audio(self, chunk: AudioChunk) -> None:
        if not self.is_connected or self._bridge is None:
            return
        if codecs.base_type(chunk.encoding) != codecs.PCM_S16LE:
            logger.debug(f"[TRANSPORT][NATIVE] dropping non-PCM chunk encoding={chunk.encoding}")
            return
        await asyncio.to_thread(self._bridge.push_input, chunk.data)

    async def end(self) -> TransportEnd:
        if self._end_result is not None:
            return self._end_result

        if self._status not in (SessionStatus.ERROR, SessionStatus.DISCONNECTED):
            self._set_status(SessionStatus.ENDING)
        self._settle_handshake()

        conversation, self._conversation = self._conversation, None
        if conversation is not None:
            await asyncio.to_thread(conversation.end_session)

        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            try:
                await asyncio.wait_for(watcher, timeout=self._end_timeout)
            except asyncio.TimeoutError:
                logger.warning("[TRANSPORT][NATIVE] SDK did not confirm session end in time")

        if self._bridge is not None:
            self._bridge.stop()

        result = self._finish("client_ended")
        self._emit(TransportEvent.ENDED, result)
        return result

    async def _watch_session(self, conversation: ConversationLike) -> None:
        conversation_id = await asyncio.to_thread(conversation.wait_for_session_end)
        if conversation_id:
            self._conversation_id = conversation_id
        if self.is_closing:
            return

        if self._status == SessionStatus.CONNECTING:
            # The SDK thread exited before it ever opened the audio interface.
            self._settle_handshake(ConnectionFailed("Conversation closed before the handshake completed"))
            return

        logger.info(f"[TRANSPORT][NATIVE] session ended remotely conversation_id={conversation_id}")
        self._conversation = None
        self._watcher = None
        if self._bridge is not None:
            self._bridge.stop()
        result = self._finish("remote_closed")
        self._emit(TransportEvent.ENDED, result)

    async def _abandon(self) -> None:
        """Stop the SDK thread after a failed handshake."""
        conversation, self._conversation = self._conversation, None
        self._watcher = None
        if conversation is not None:
            try:
                await asyncio.to_thread(conversation.end_session)
            except Exception as e:
                logger.debug(f"[TRANSPORT][NATIVE] end_session after failed handshake: {e}")
        if self._bridge is not None:
            self._bridge.stop()

    def _settle_handshake(self, error: SessionError | None = None) -> None:
        handshake = self._handshake
        if handshake is None or handshake.done():
            return
        if error is None:
            handshake.set_result(None)
        else:
            handshake.set_exception(error)

    def _on_sdk_ready(self) -> None:
        if self._status != SessionStatus.CONNECTING:
            return
        self._set_status(SessionStatus.CONNECTED)
        self._settle_handshake()

    def _on_transcript(self, role: TranscriptRole, text: str) -> None:
        if self._status != SessionStatus.CONNECTED or not text:
            return
        self._emit(TransportEvent.TRANSCRIPT, role, text)

    def _on_sdk_audio(self, audio: bytes) -> None:
        if self._status != SessionStatus.CONNECTED or not audio:
            return
        self._emit(
            TransportEvent.AUDIO_RECEIVED,
            AudioChunk(data=audio, encoding=codecs.pcm_encoding(16000), sample_rate=16000),
        )

    def _on_sdk_interrupt(self) -> None:
        if self._status != SessionStatus.CONNECTED:
            return
        logger.info("[TRANSPORT][NATIVE] interruption")
        self._emit(TransportEvent.INTERRUPTION)
