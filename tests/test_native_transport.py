import asyncio
import threading

import pytest

from bewerbungstrainer.errors import ConnectionFailed, Timeout
from bewerbungstrainer.orchestrator.schemas import AudioChunk, SessionConfig, SessionStatus, TranscriptRole, TransportKind
from bewerbungstrainer.orchestrator.session_orchestrator import SessionOrchestrator
from bewerbungstrainer.transport.base import TransportEvent
from bewerbungstrainer.transport.native import NativeSdkTransport


class FakeConversation:
    """Behaves like the SDK: start_session() only spawns the session thread."""

    def __init__(self, start_gate: threading.Event | None = None, reachable: bool = True) -> None:
        self.start_gate = start_gate
        self.reachable = reachable
        self.started = threading.Event()
        self.ended = threading.Event()
        self.end_calls = 0
        self.inputs: list[bytes] = []
        self.bridge = None
        self.callbacks = None
        self.config = None
        self._thread: threading.Thread | None = None

    def start_session(self) -> None:
        self.started.set()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        if self.start_gate is not None:
            self.start_gate.wait(2)
        if not self.reachable:
            # Socket never opened, the thread dies.
            return
        self.bridge.start(self.inputs.append)
        self.ended.wait(5)

    def end_session(self) -> None:
        self.end_calls += 1
        self.ended.set()

    def wait_for_session_end(self) -> str | None:
        if self._thread is not None:
            self._thread.join(5)
        return "conv_native_1"

class FakeFactory:
    def __init__(self, conversation: FakeConversation) -> None:
        self.conversation = conversation

    def __call__(self, config, bridge, callbacks):  # noqa: ANN001
        self.conversation.config = config
        self.conversation.bridge = bridge
        self.conversation.callbacks = callbacks
        return self.conversation


class FakeCapture:
    def __init__(self) -> None:
        self.muted = False
        self.level = 0.0
        self.started = False
        self.stopped = False
        self._callbacks = []

    def on_chunk(self, callback):  # noqa: ANN001
        self._callbacks.append(callback)
        return lambda: self._callbacks.remove(callback) if callback in self._callbacks else None

    async def start(self, device_id=None, encoding=None) -> None:  # noqa: ANN001
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def emit(self, data: bytes = b"\x00\x01" * 160) -> None:
        for cb in list(self._callbacks):
            cb(AudioChunk(data=data, encoding="audio/pcm;rate=16000"))


class FakePlayback:
    instances: list["FakePlayback"] = []

    def __init__(self) -> None:
        self.enqueued: list[AudioChunk] = []
        self.flushes = 0
        self.closed = False
        FakePlayback.instances.append(self)

    def enqueue(self, chunk: AudioChunk) -> None:
        self.enqueued.append(chunk)

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.closed = True


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_sdk_callbacks_are_marshalled_to_events() -> None:
    conversation = FakeConversation()
    transport = NativeSdkTransport(conversation_factory=FakeFactory(conversation), handshake_timeout=2)
    transcripts = []
    audio = []
    interruptions = []
    transport.on(TransportEvent.TRANSCRIPT, lambda role, text: transcripts.append((role, text)))
    transport.on(TransportEvent.AUDIO_RECEIVED, audio.append)
    transport.on(TransportEvent.INTERRUPTION, lambda: interruptions.append(True))

    await transport.start(SessionConfig(agent_id="agent-1", first_message="Willkommen"))
    assert transport.status == SessionStatus.CONNECTED
    assert conversation.config.first_message == "... Willkommen"

    def sdk_thread() -> None:
        conversation.callbacks["agent_response"]("Stellen Sie sich bitte vor.")
        conversation.bridge.output(b"\x01\x00" * 32)
        conversation.bridge.interrupt()
        conversation.callbacks["user_transcript"]("Ich bin Mia.")

    thread = threading.Thread(target=sdk_thread)
    thread.start()
    await asyncio.to_thread(thread.join)
    await _settle()

    assert transcripts == [
        (TranscriptRole.AGENT, "Stellen Sie sich bitte vor."),
        (TranscriptRole.USER, "Ich bin Mia."),
    ]
    assert len(audio) == 1 and audio[0].encoding == "audio/pcm;rate=16000"
    assert interruptions == [True]

    await transport.send_audio(AudioChunk(data=b"\x02\x00", encoding="audio/pcm;rate=16000"))
    assert conversation.inputs == [b"\x02\x00"]

    result = await transport.end()
    assert result.reason == "client_ended"
    assert result.conversation_id == "conv_native_1"
    assert conversation.end_calls == 1


@pytest.mark.asyncio
async def test_remote_session_end_emits_ended() -> None:
    conversation = FakeConversation()
    transport = NativeSdkTransport(conversation_factory=FakeFactory(conversation), handshake_timeout=2)
    ended = []
    transport.on(TransportEvent.ENDED, ended.append)

    await transport.start(SessionConfig(agent_id="agent-1"))
    conversation.ended.set()
    await _settle()

    assert transport.status == SessionStatus.DISCONNECTED
    assert [e.reason for e in ended] == ["remote_closed"]
    assert ended[0].conversation_id == "conv_native_1"


@pytest.mark.asyncio
async def test_start_waits_for_the_sdk_handshake() -> None:
    gate = threading.Event()
    conversation = FakeConversation(start_gate=gate)
    transport = NativeSdkTransport(conversation_factory=FakeFactory(conversation), handshake_timeout=2)

    starting = asyncio.create_task(transport.start(SessionConfig(agent_id="agent-1")))
    assert await asyncio.to_thread(conversation.started.wait, 2)
    await _settle()
    assert transport.status == SessionStatus.CONNECTING
    assert not starting.done()

    gate.set()
    assert await starting == "agent-1"
    assert transport.status == SessionStatus.CONNECTED
    await transport.end()


@pytest.mark.asyncio
async def test_slow_handshake_times_out() -> None:
    gate = threading.Event()
    conversation = FakeConversation(start_gate=gate)
    transport = NativeSdkTransport(conversation_factory=FakeFactory(conversation), handshake_timeout=0.05)

    try:
        with pytest.raises(Timeout):
            await transport.start(SessionConfig(agent_id="agent-1"))
        assert transport.status == SessionStatus.ERROR
        # The SDK thread is told to stop.
        assert conversation.end_calls == 1
    finally:
        gate.set()


@pytest.mark.asyncio
async def test_session_thread_dying_before_handshake_is_connection_failure() -> None:
    conversation = FakeConversation(reachable=False)
    transport = NativeSdkTransport(conversation_factory=FakeFactory(conversation), handshake_timeout=2)
    ended = []
    transport.on(TransportEvent.ENDED, ended.append)

    with pytest.raises(ConnectionFailed):
        await transport.start(SessionConfig(agent_id="agent-1"))

    assert transport.status == SessionStatus.ERROR
    assert ended == []
    assert conversation.end_calls == 1


@pytest.mark.asyncio
async def test_end_before_connected_leaves_no_activity() -> None:
    FakePlayback.instances = []
    gate = threading.Event()
    conversation = FakeConversation(start_gate=gate)
    capture = FakeCapture()
    orchestrator = SessionOrchestrator(
        transport_factory=lambda kind: NativeSdkTransport(
            conversation_factory=FakeFactory(conversation), handshake_timeout=2
        ),
        transport_kind=TransportKind.NATIVE,
        capture=capture,
        playback_factory=FakePlayback,
    )

    starting = asyncio.create_task(orchestrator.start_call(SessionConfig(agent_id="agent-1")))
    assert await asyncio.to_thread(conversation.started.wait, 2)
    await _settle()
    assert orchestrator.status == SessionStatus.CONNECTING

    capture.emit()
    ending = asyncio.create_task(orchestrator.end_call())
    await _settle()
    # The socket opens only after the user already hung up.
    gate.set()
    outcome = await ending
    handle = await starting

    # Late SDK callbacks after the session was torn down.
    conversation.callbacks["agent_response"]("zu spät")
    conversation.bridge.output(b"\x01\x00" * 32)
    await _settle()

    assert handle is None
    assert outcome is not None and outcome.transcript == []
    assert orchestrator.status == SessionStatus.DISCONNECTED
    assert orchestrator.is_active is False
    assert capture.stopped is True
    assert conversation.inputs == []
    assert conversation.end_calls == 1
    assert FakePlayback.instances[0].enqueued == []
    assert FakePlayback.instances[0].closed is True
    assert orchestrator.transcript == []
