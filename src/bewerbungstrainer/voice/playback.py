"""Sequential playback of inbound agent audio.

Chunks are played strictly one after another by a single worker task.
Audio is written to the device in small slices so that ``flush()`` takes
effect within a few milliseconds. A generation counter marks every chunk
that was queued before the last flush as stale.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Protocol

import numpy as np

from bewerbungstrainer.errors import DecodeError
from bewerbungstrainer.orchestrator.schemas import AudioChunk
from bewerbungstrainer.voice import codecs

logger = logging.getLogger(__name__)


class AudioSink(Protocol):
    def write(self, frames: np.ndarray, sample_rate: int) -> None: ...

    def abort(self) -> None: ...

    def close(self) -> None: ...


class SounddeviceSink:
    """Blocking output stream writer backed by sounddevice."""

    def __init__(self, device: str | int | None = None) -> None:
        self._device = device
        self._stream = None
        self._stream_key: tuple[int, int] | None = None

    def _require_sounddevice(self):
        try:
            import sounddevice as sd  # type: ignore

            return sd
        except Exception as e:  # pragma: no cover
            raise RuntimeError(
                "sounddevice is required for audio playback. Install Python deps with: pip install -e . "
                "If you see 'PortAudio library not found', install PortAudio (Debian/Ubuntu: sudo apt-get install portaudio19-dev)."
            ) from e

    def _ensure_stream(self, sample_rate: int, channels: int):
        key = (sample_rate, channels)
        if self._stream is not None and self._stream_key != key:
            self.close()
        if self._stream is None:
            sd = self._require_sounddevice()
            self._stream = sd.OutputStream(
                device=self._device,
                samplerate=sample_rate,
                channels=channels,
                dtype="float32",
            )
            self._stream_key = key
        if not self._stream.active:
            self._stream.start()
        return self._stream

    def write(self, frames: np.ndarray, sample_rate: int) -> None:
        channels = 1 if frames.ndim == 1 else frames.shape[1]
        stream = self._ensure_stream(sample_rate, channels)
        stream.write(np.ascontiguousarray(frames, dtype=np.float32))

    def abort(self) -> None:
        if self._stream is not None and self._stream.active:
            self._stream.abort()

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        self._stream_key = None
        if stream is not None:
            stream.abort()
            stream.close()


class AudioPlaybackQueue:
    def __init__(
        self,
        sink: AudioSink | None = None,
        *,
        default_sample_rate: int = 16000,
        slice_frames: int = 1024,
    ) -> None:
        self._sink = sink if sink is not None else SounddeviceSink()
        self._default_sample_rate = default_sample_rate
        self._slice_frames = slice_frames
        self._queue: deque[AudioChunk] = deque()
        self._generation = 0
        self._worker: asyncio.Task | None = None
        self._playing = False
        self._closed = False
        self._played = 0
        self._skipped = 0

    @property
    def is_playing(self) -> bool:
        """True while a chunk is playing or chunks are waiting."""
        return self._playing or bool(self._queue)

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def played_count(self) -> int:
        return self._played

    @property
    def skipped_count(self) -> int:
        return self._skipped

    def enqueue(self, chunk: AudioChunk) -> None:
        """Append a chunk; starts the worker if the queue was idle."""
        if self._closed:
            logger.debug("[AUDIO][PLAYBACK] dropping chunk after close")
            return

        self._queue.append(chunk)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    def flush(self) -> None:
        """Discard queued chunks and stop the current one immediately."""
        dropped = len(self._queue)
        self._generation += 1
        self._queue.clear()
        if self._playing:
            self._sink.abort()
        if dropped or self._playing:
            logger.info(f"[AUDIO][PLAYBACK] flushed dropped={dropped} interrupted={self._playing}")

    async def join(self) -> None:
        """Wait until the worker has drained the queue."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    def close(self) -> None:
        """Flush and release the output device. The queue cannot be reused."""
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._sink.close()

    async def _drain(self) -> None:
        while self._queue and not self._closed:
            generation = self._generation
            chunk = self._queue.popleft()

            try:
                samples, sample_rate = await asyncio.to_thread(
                    codecs.decode, chunk.data, chunk.encoding, chunk.sample_rate or self._default_sample_rate
                )
            except DecodeError as e:
                self._skipped += 1
                logger.warning(f"[AUDIO][PLAYBACK] skipping undecodable chunk: {e}")
                continue

            if generation != self._generation or self._closed:
                continue

            await self._play(samples, sample_rate, generation)

    async def _play(self, samples: np.ndarray, sample_rate: int, generation: int) -> None:
        self._playing = True
        try:
            for start in range(0, len(samples), self._slice_frames):
                if generation != self._generation or self._closed:
                    logger.debug("[AUDIO][PLAYBACK] chunk interrupted")
                    return
                try:
                    await asyncio.to_thread(
                        self._sink.write, samples[start : start + self._slice_frames], sample_rate
                    )
                except Exception as e:
                    if generation == self._generation and not self._closed:
                        logger.error(f"[AUDIO][PLAYBACK] output write failed: {e}")
                    return
            self._played += 1
        finally:
            self._playing = False
