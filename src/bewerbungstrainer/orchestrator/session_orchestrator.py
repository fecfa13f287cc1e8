"""
Session orchestrator.

The single object the UI layer talks to. Owns one transport per session,
wires microphone chunks into it and its events into playback and the
transcript, tracks the duration and runs the end-of-session flow
(feedback generation and persistence).
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from bewerbungstrainer.config import Settings, get_settings
from bewerbungstrainer.errors import EmptyTranscript, SessionError
from bewerbungstrainer.orchestrator.coaching import CoachingHook, extract_coaching_context, should_generate_coaching
from bewerbungstrainer.orchestrator.schemas import (
    AudioChunk,
    FeedbackResult,
    SessionConfig,
    SessionOutcome,
    SessionStatus,
    TranscriptEntry,
    TranscriptRole,
    TransportEnd,
    TransportKind,
)
from bewerbungstrainer.orchestrator.session_state import SessionState
from bewerbungstrainer.services.backend import BackendClient
from bewerbungstrainer.services.feedback import FeedbackGenerator, format_transcript_for_feedback
from bewerbungstrainer.transport.base import TransportEvent, TransportStrategy, classify_connect_error
from bewerbungstrainer.transport.connectivity import ConnectivityProbe
from bewerbungstrainer.voice.audio_io import AudioCaptureConfig, AudioCaptureEngine
from bewerbungstrainer.voice.playback import AudioPlaybackQueue
from bewerbungstrainer.voice.transcript import TranscriptTimeline, transcript_from_remote

TransportFactory = Callable[[TransportKind], TransportStrategy]


def create_transport(
    kind: TransportKind,
    *,
    settings: Settings | None = None,
    backend: BackendClient | None = None,
) -> TransportStrategy:
    """Build the default transport for ``kind``."""
    settings = settings or get_settings()
    if kind == TransportKind.NATIVE:
        from bewerbungstrainer.transport.native import NativeSdkTransport

        return NativeSdkTransport(api_key=settings.elevenlabs_api_key)
    if kind == TransportKind.PROXY:
        from bewerbungstrainer.transport.proxy import ProxyTransport

        return ProxyTransport(settings.proxy_ws_url)

    from bewerbungstrainer.transport.http_turns import HttpTurnTransport

    return HttpTurnTransport(backend or BackendClient(), sample_rate=settings.sample_rate)


class SessionOrchestrator:
    """
    Drives one live training session at a time.

    Collaborators are passed in explicitly; nothing is read from
    module-level state once constructed.
    """

    def __init__(
        self,
        *,
        transport_factory: TransportFactory | None = None,
        transport_kind: TransportKind | None = None,
        prefer_proxy: bool | None = None,
        probe: ConnectivityProbe | None = None,
        capture: AudioCaptureEngine | None = None,
        playback_factory: Callable[[], AudioPlaybackQueue] | None = None,
        timeline: TranscriptTimeline | None = None,
        feedback: FeedbackGenerator | None = None,
        backend: BackendClient | None = None,
        coaching_hook: CoachingHook | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the session orchestrator.

        Args:
            transport_factory: Builds a transport for the selected kind.
            transport_kind: Fixed transport; probed per session when None.
            prefer_proxy: Use the relay instead of the SDK when WebSockets work.
            probe: Connectivity probe used for transport selection.
            capture: Microphone engine.
            playback_factory: Creates a fresh playback queue per session.
            timeline: Transcript timeline.
            feedback: Post-session feedback generator, optional.
            backend: Persistence collaborator, optional.
            coaching_hook: Called for agent utterances worth coaching on.
            settings: Application settings (uses config if not provided).
            clock: Monotonic clock for duration tracking.
        """
        self._logger = logging.getLogger(__name__)
        self._settings = settings or get_settings()
        self._backend = backend
        self._transport_factory = transport_factory or (
            lambda kind: create_transport(kind, settings=self._settings, backend=self._backend)
        )
        self._forced_kind = transport_kind
        self._prefer_proxy = self._settings.use_proxy if prefer_proxy is None else prefer_proxy
        self._probe = probe
        self._capture = capture or AudioCaptureEngine(
            AudioCaptureConfig(
                sample_rate=self._settings.sample_rate,
                chunk_ms=self._settings.chunk_interval_ms,
            )
        )
        self._playback_factory = playback_factory or AudioPlaybackQueue
        self._timeline = timeline or TranscriptTimeline(clock=clock)
        self._feedback = feedback
        self._coaching_hook = coaching_hook
        self._clock = clock

        self._state = SessionState(clock)
        self._config: SessionConfig | None = None
        self._transport: TransportStrategy | None = None
        self._playback: AudioPlaybackQueue | None = None
        self._active = False
        self._turn_open = False
        self._record_id: str | None = None
        self._removers: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task] = set()
        self._outbox: asyncio.Queue[AudioChunk] | None = None
        self._pump: asyncio.Task | None = None
        self._timer: asyncio.Task | None = None
        self._end_task: asyncio.Task | None = None
        self._outcome: SessionOutcome | None = None
        self._transcript_listeners: list[Callable[[TranscriptEntry], None]] = []
        self._status_listeners: list[Callable[[SessionStatus], None]] = []
        self._duration_listeners: list[Callable[[int], None]] = []

    # Read-only state

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def transcript(self) -> list[TranscriptEntry]:
        return self._timeline.entries

    @property
    def duration(self) -> int:
        """Whole seconds connected."""
        return self._state.duration_seconds

    @property
    def audio_level(self) -> float:
        """Microphone level in [0, 1]."""
        return self._capture.level

    @property
    def last_error(self) -> SessionError | None:
        return self._state.last_error

    @property
    def is_muted(self) -> bool:
        return self._state.muted

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def transport_kind(self) -> TransportKind | None:
        return self._state.transport_kind

    @property
    def turn_based(self) -> bool:
        """Whether the user commits turns explicitly (push-to-talk)."""
        return self._transport is not None and self._transport.turn_based

    @property
    def outcome(self) -> SessionOutcome | None:
        """Result of the last finished session."""
        return self._outcome

    # Subscriptions

    def on_transcript(self, callback: Callable[[TranscriptEntry], None]) -> Callable[[], None]:
        self._transcript_listeners.append(callback)
        return lambda: self._discard(self._transcript_listeners, callback)

    def on_status(self, callback: Callable[[SessionStatus], None]) -> Callable[[], None]:
        self._status_listeners.append(callback)
        return lambda: self._discard(self._status_listeners, callback)

    def on_duration(self, callback: Callable[[int], None]) -> Callable[[], None]:
        self._duration_listeners.append(callback)
        return lambda: self._discard(self._duration_listeners, callback)

    @staticmethod
    def _discard(callbacks: list, callback) -> None:  # noqa: ANN001
        if callback in callbacks:
            callbacks.remove(callback)

    def _notify(self, callbacks: list, *args: Any) -> None:
        for cb in list(callbacks):
            try:
                cb(*args)
            except Exception:
                self._logger.exception("[SESSION] listener failed")

    # Lifecycle

    async def start_call(self, config: SessionConfig) -> str | None:
        """
        Start a session.

        Returns:
            The conversation handle, or None if ``end_call()`` ran meanwhile.

        Raises:
            SessionError: Capture or connection failed; the session is in
                ``error`` and already torn down.
            RuntimeError: A session is already running.
        """
        if self._active or (self._end_task is not None and not self._end_task.done()):
            raise RuntimeError("A session is already running")

        self._state = SessionState(self._clock)
        self._config = config
        self._outcome = None
        self._end_task = None
        self._record_id = None
        self._turn_open = False
        self._active = True

        kind = await self._select_transport_kind(config)
        if not self._active:
            return None

        self._state.set_transport(kind)
        self._set_status(SessionStatus.CONNECTING)
        self._logger.info(f"[SESSION] starting transport={kind.value} agent_id={config.agent_id or '-'}")

        transport = self._transport_factory(kind)
        self._transport = transport
        self._removers = [
            transport.on(TransportEvent.AUDIO_RECEIVED, self._on_agent_audio),
            transport.on(TransportEvent.TRANSCRIPT, self._on_transcript),
            transport.on(TransportEvent.INTERRUPTION, self._on_interruption),
            transport.on(TransportEvent.ERROR, self._on_transport_error),
            transport.on(TransportEvent.ENDED, self._on_transport_ended),
            self._capture.on_chunk(self._on_capture_chunk),
        ]
        self._playback = self._playback_factory()
        self._outbox = asyncio.Queue()
        self._pump = asyncio.get_running_loop().create_task(self._pump_audio(transport, self._outbox))

        try:
            await self._capture.start(config.input_device_id, encoding=transport.input_encoding)
        except SessionError as e:
            return await self._abort_start(e)
        except Exception:
            self._teardown()
            self._set_status(SessionStatus.DISCONNECTED)
            raise
        if not self._active:
            return None

        await self._create_record(config, kind)
        if not self._active:
            return None

        # Turn transports deliver the greeting from inside start().
        self._timeline.start()
        try:
            handle = await transport.start(config)
        except SessionError as e:
            return await self._abort_start(e)
        except Exception as e:
            return await self._abort_start(classify_connect_error(e))
        if handle is None or not self._active:
            return None

        self._set_status(SessionStatus.CONNECTED)
        self._timer = asyncio.get_running_loop().create_task(self._tick_duration())
        self._logger.info(f"[SESSION] connected handle={handle}")
        return handle

    async def end_call(self) -> SessionOutcome | None:
        """
        End the session and run the end-of-session flow.

        Capture, playback, timers and transport handlers are torn down before
        the first suspension point. Safe to call at any time, repeatedly.
        """
        if self._end_task is None:
            if not self._active:
                return self._outcome
            self._teardown()
            self._end_task = asyncio.get_running_loop().create_task(self._finish_session(None))
        return await asyncio.shield(self._end_task)

    def toggle_mute(self) -> bool:
        """Mute or unmute the microphone. Returns the new muted state."""
        muted = not self._state.muted
        self._state.set_muted(muted)
        self._capture.muted = muted
        self._logger.info(f"[SESSION] muted={muted}")
        return muted

    def start_user_turn(self) -> None:
        """Open a push-to-talk utterance. Stops any reply still playing."""
        if not self._active or not self.turn_based:
            return
        if self._playback is not None:
            self._playback.flush()
        self._turn_open = True

    async def end_user_turn(self) -> None:
        """Commit the current push-to-talk utterance. Streaming transports ignore it."""
        transport = self._transport
        if not self._active or transport is None or not transport.turn_based:
            return
        self._turn_open = False
        if self._outbox is not None:
            await self._outbox.join()
        if not self._active:
            return
        await transport.commit_turn()

    def invalidate_probe(self, agent_id: str | None = None) -> None:
        if self._probe is not None:
            self._probe.invalidate(agent_id)

    # Internals

    def _set_status(self, status: SessionStatus) -> None:
        if status == self._state.status:
            return
        self._state.transition(status)
        self._notify(self._status_listeners, status)

    async def _select_transport_kind(self, config: SessionConfig) -> TransportKind:
        if self._forced_kind is not None:
            return self._forced_kind
        if self._probe is None:
            return TransportKind.PROXY if self._prefer_proxy else TransportKind.NATIVE
        return await self._probe.select_transport(config.agent_id, self._prefer_proxy)

    async def _create_record(self, config: SessionConfig, kind: TransportKind) -> None:
        if self._backend is None:
            return
        scenario = config.scenario
        payload = {
            "agent_id": config.agent_id,
            "scenario_id": scenario.id if scenario else None,
            "variables": config.variables,
            "connection_mode": kind.value,
        }
        try:
            self._record_id = await self._backend.create_session(payload)
        except SessionError as e:
            self._logger.warning(f"[SESSION] could not create session record: {e.message}")

    async def _abort_start(self, error: SessionError) -> None:
        """Tear down a session that never connected. It stays in ``error`` until the next start."""
        if not self._active:
            return None
        self._logger.error(f"[SESSION] start failed: {error.code}: {error.message}")
        self._state.record_error(error)
        if self._state.status != SessionStatus.ERROR:
            self._state.transition(SessionStatus.ERROR)
        self._notify(self._status_listeners, SessionStatus.ERROR)
        self._teardown()
        transport = self._transport
        if transport is not None:
            try:
                await transport.end()
            except Exception as e:
                self._logger.debug(f"[SESSION] transport cleanup failed: {e}")
        self._outcome = SessionOutcome(
            session_id=self._record_id or str(self._state.session_id),
            transport=self._state.transport_kind,
            end_reason="start_failed",
            error=error.user_message,
        )
        raise error

    def _teardown(self) -> None:
        """Stop everything that could fire callbacks. Synchronous."""
        self._active = False
        self._turn_open = False

        for remove in self._removers:
            remove()
        self._removers = []

        self._capture.stop()
        if self._playback is not None:
            self._playback.close()
            self._playback = None

        for task in (self._timer, self._pump):
            if task is not None:
                task.cancel()
        self._timer = None
        self._pump = None

        # Release anyone waiting on queued audio.
        outbox, self._outbox = self._outbox, None
        while outbox is not None and not outbox.empty():
            outbox.get_nowait()
            outbox.task_done()

    async def _finish_session(self, remote_end: TransportEnd | None) -> SessionOutcome:
        was_connected = self._state.status == SessionStatus.CONNECTED
        if self._state.can_transition(SessionStatus.ENDING):
            self._set_status(SessionStatus.ENDING)

        transport = self._transport
        result = remote_end
        if result is None and transport is not None:
            try:
                result = await transport.end()
            except Exception as e:
                self._logger.warning(f"[SESSION] transport end failed: {e}")
        if result is None:
            result = TransportEnd(
                reason="client_ended",
                conversation_id=transport.conversation_id if transport else None,
            )

        duration = self._state.duration_seconds
        self._set_status(SessionStatus.DISCONNECTED)
        self._logger.info(f"[SESSION] ended reason={result.reason} duration={duration}s")

        if not was_connected and remote_end is None:
            outcome = SessionOutcome(
                session_id=self._record_id or str(self._state.session_id),
                conversation_id=result.conversation_id,
                transport=self._state.transport_kind,
                end_reason=result.reason,
                duration_seconds=duration,
            )
        else:
            outcome = await self._run_post_session(result, duration)

        self._outcome = outcome
        return outcome

    async def _run_post_session(self, result: TransportEnd, duration: int) -> SessionOutcome:
        if result.full_transcript:
            transcript = transcript_from_remote(result.full_transcript)
        else:
            transcript = self._timeline.entries

        outcome = SessionOutcome(
            session_id=self._record_id or str(self._state.session_id),
            conversation_id=result.conversation_id,
            transport=self._state.transport_kind,
            end_reason=result.reason,
            transcript=transcript,
            duration_seconds=duration,
            saved_record_id=self._record_id,
        )

        if not transcript:
            error = EmptyTranscript()
            self._state.record_error(error)
            self._logger.warning("[SESSION] transcript empty, skipping feedback")
            return outcome.model_copy(update={"error": error.user_message})

        audio = await self._fetch_session_audio(result)
        feedback, error_message = await self._generate_feedback(transcript, audio)

        if self._backend is not None and self._record_id:
            try:
                await self._backend.update_session(
                    self._record_id,
                    transcript=transcript,
                    feedback=feedback.feedback if feedback else None,
                    audio_analysis=feedback.audio_analysis if feedback else None,
                    duration=duration,
                    conversation_id=result.conversation_id,
                )
            except SessionError as e:
                self._logger.error(f"[SESSION] saving session failed: {e.message}")
                error_message = error_message or e.user_message

        return outcome.model_copy(
            update={"feedback": feedback, "audio_available": audio is not None, "error": error_message}
        )

    async def _fetch_session_audio(self, result: TransportEnd) -> bytes | None:
        if self._backend is None or not self._record_id:
            return None

        transport = self._transport
        if transport is not None and transport.remote_recording and result.conversation_id:
            try:
                await self._backend.save_conversation_audio(result.conversation_id, self._record_id)
            except SessionError as e:
                self._logger.warning(f"[SESSION] archiving conversation audio failed: {e.message}")

        try:
            return await self._backend.fetch_session_audio(self._record_id)
        except SessionError as e:
            self._logger.warning(f"[SESSION] session audio unavailable, continuing without: {e.message}")
            return None

    async def _generate_feedback(
        self,
        transcript: list[TranscriptEntry],
        audio: bytes | None,
    ) -> tuple[FeedbackResult | None, str | None]:
        if self._feedback is None:
            return None, None

        config = self._config
        scenario = config.scenario if config else None
        context = extract_coaching_context(scenario)
        context["variables"] = dict(config.variables) if config else {}
        context["feedback_prompt"] = scenario.feedback_prompt if scenario else None

        try:
            feedback = await self._feedback.generate(
                format_transcript_for_feedback(transcript, context),
                context,
                audio,
            )
        except Exception as e:
            self._logger.error(f"[SESSION] feedback generation failed: {e}")
            return None, "Feedback konnte nicht erstellt werden."
        return feedback, None

    async def _pump_audio(self, transport: TransportStrategy, outbox: asyncio.Queue[AudioChunk]) -> None:
        while True:
            chunk = await outbox.get()
            try:
                await transport.send_audio(chunk)
            except SessionError as e:
                self._logger.warning(f"[SESSION] sending audio failed: {e.message}")
            finally:
                outbox.task_done()

    async def _tick_duration(self) -> None:
        while self._active:
            await asyncio.sleep(1.0)
            self._notify(self._duration_listeners, self._state.duration_seconds)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # Event handlers

    def _on_capture_chunk(self, chunk: AudioChunk) -> None:
        transport = self._transport
        if not self._active or self._outbox is None or transport is None or not transport.is_connected:
            return
        if transport.turn_based and not self._turn_open:
            return
        self._outbox.put_nowait(chunk)

    def _on_agent_audio(self, chunk: AudioChunk) -> None:
        if self._active and self._playback is not None:
            self._playback.enqueue(chunk)

    def _on_interruption(self) -> None:
        if self._playback is not None:
            self._playback.flush()

    def _on_transcript(self, role: TranscriptRole, text: str) -> None:
        if not self._active:
            return
        entry = self._timeline.append(role, text)
        if entry is None:
            return
        self._logger.debug(f"[SESSION] [{entry.time_label}] {entry.role.value}: {entry.text[:80]}")
        self._notify(self._transcript_listeners, entry)

        if self._coaching_hook is not None and should_generate_coaching(entry):
            context = extract_coaching_context(self._config.scenario if self._config else None)
            self._spawn(self._run_coaching(entry, context))

    async def _run_coaching(self, entry: TranscriptEntry, context: dict[str, Any]) -> None:
        try:
            await self._coaching_hook(entry, self._timeline.entries, context)
        except Exception as e:
            self._logger.warning(f"[SESSION] coaching hook failed: {e}")

    def _on_transport_error(self, error: SessionError) -> None:
        self._logger.warning(f"[SESSION] transport error {error.code}: {error.message}")
        before = self._state.status
        self._state.record_error(error)
        if self._state.status != before:
            self._notify(self._status_listeners, self._state.status)

    def _on_transport_ended(self, result: TransportEnd) -> None:
        if not self._active or self._end_task is not None:
            return
        self._logger.info(f"[SESSION] remote end reason={result.reason}")
        self._teardown()
        self._end_task = asyncio.get_running_loop().create_task(self._finish_session(result))
