"""Microphone capture with chunked encoding and level metering.

This module is "dumb hardware I/O": it knows nothing about transports,
transcripts or the remote agent.

It provides:
- exclusive microphone acquisition for one input device
- encoded chunks at a fixed cadence (``on_chunk``)
- a frequency-domain amplitude level in [0, 1] for visualizers (``on_level``)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np

from bewerbungstrainer.errors import DeviceNotFound, PermissionDenied, SessionError
from bewerbungstrainer.orchestrator.schemas import AudioChunk
from bewerbungstrainer.voice import codecs

logger = logging.getLogger(__name__)

AUTO_ENCODING = "auto"

_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted", "unauthorized")


@dataclass(frozen=True)
class AudioCaptureConfig:
    sample_rate: int = 16000
    channels: int = 1
    chunk_ms: int = 250
    # Raw PCM for streaming transports, or "auto" to probe for a container codec.
    encoding: str = AUTO_ENCODING
    fft_size: int = 256
    level_interval_s: float = 1 / 30
    # Requested from the host audio stack; PortAudio backends without
    # voice processing ignore them.
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True

    @property
    def frames_per_chunk(self) -> int:
        return max(1, int(self.sample_rate * self.chunk_ms / 1000))


def frequency_level(
    samples: np.ndarray,
    fft_size: int = 256,
    min_db: float = -100.0,
    max_db: float = -30.0,
) -> float:
    """
    Mean spectral magnitude of the newest ``fft_size`` samples, scaled to [0, 1].

    Magnitudes are mapped from the decibel window [``min_db``, ``max_db``]
    the same way an analyser node's byte frequency data is.
    """
    if samples is None or samples.size == 0:
        return 0.0

    x = samples.reshape(-1) if samples.ndim == 1 else samples[:, 0]
    x = x.astype(np.float32)
    if samples.dtype == np.int16:
        x = x / 32768.0

    frame = x[-fft_size:]
    if frame.size < fft_size:
        frame = np.pad(frame, (fft_size - frame.size, 0))

    spectrum = np.abs(np.fft.rfft(frame * np.blackman(fft_size)))[: fft_size // 2] / fft_size
    db = 20.0 * np.log10(spectrum + 1e-12)
    scaled = np.clip((db - min_db) / (max_db - min_db), 0.0, 1.0)
    return float(scaled.mean())


def _classify_stream_error(error: Exception) -> SessionError:
    text = str(error).lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return PermissionDenied(f"Microphone access denied: {error}")
    return DeviceNotFound(f"Microphone unavailable: {error}")


class AudioCaptureEngine:
    def __init__(self, config: AudioCaptureConfig | None = None) -> None:
        self._config = config or AudioCaptureConfig()
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._level_task: asyncio.Task | None = None
        self._active = False
        self._muted = False
        self._encoding: str | None = None
        self._last_frames: np.ndarray | None = None
        self._level = 0.0
        self._chunk_callbacks: list[Callable[[AudioChunk], None]] = []
        self._level_callbacks: list[Callable[[float], None]] = []

    @property
    def config(self) -> AudioCaptureConfig:
        return self._config

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def encoding(self) -> str | None:
        """Encoding chosen at ``start()``."""
        return self._encoding

    @property
    def level(self) -> float:
        return self._level

    @property
    def muted(self) -> bool:
        return self._muted

    @muted.setter
    def muted(self, value: bool) -> None:
        self._muted = bool(value)

    def on_chunk(self, callback: Callable[[AudioChunk], None]) -> Callable[[], None]:
        self._chunk_callbacks.append(callback)
        return lambda: self._remove(self._chunk_callbacks, callback)

    def on_level(self, callback: Callable[[float], None]) -> Callable[[], None]:
        self._level_callbacks.append(callback)
        return lambda: self._remove(self._level_callbacks, callback)

    @staticmethod
    def _remove(callbacks: list, callback) -> None:  # noqa: ANN001
        if callback in callbacks:
            callbacks.remove(callback)

    def _require_sounddevice(self):
        try:
            import sounddevice as sd  # type: ignore

            return sd
        except Exception as e:  # pragma: no cover
            raise RuntimeError(
                "sounddevice is required for microphone capture. Install Python deps with: pip install -e . "
                "If you see 'PortAudio library not found', install PortAudio (Debian/Ubuntu: sudo apt-get install portaudio19-dev)."
            ) from e

    def _resolve_device(self, sd, device_id: str | int | None) -> dict:  # noqa: ANN001
        try:
            info = sd.query_devices(device_id, kind="input")
        except (ValueError, sd.PortAudioError) as e:
            if device_id is None:
                raise DeviceNotFound("No audio input device available") from e
            raise DeviceNotFound(f"No input device matches {device_id!r}") from e

        if not info or int(info.get("max_input_channels", 0)) < 1:
            raise DeviceNotFound(f"Device {device_id!r} has no input channels")
        return info

    async def start(self, device_id: str | int | None = None, encoding: str | None = None) -> None:
        """
        Acquire the microphone and begin emitting chunks and levels.

        Args:
            device_id: Input device index or name substring; the system
                default when omitted.
            encoding: Overrides the configured encoding for this capture,
                e.g. the encoding a transport expects.

        Raises:
            DeviceNotFound: No input device exists or none matches ``device_id``.
            PermissionDenied: The OS refused access to the device.
        """
        if self._active:
            return

        sd = self._require_sounddevice()
        info = self._resolve_device(sd, device_id)

        cfg = self._config
        requested = encoding or cfg.encoding
        if requested == AUTO_ENCODING:
            self._encoding = codecs.best_supported_encoding()
        elif codecs.base_type(requested) == codecs.PCM_S16LE:
            self._encoding = codecs.pcm_encoding(cfg.sample_rate)
        else:
            self._encoding = requested

        self._loop = asyncio.get_running_loop()
        self._last_frames = None

        def callback(indata, frames, time, status):  # noqa: ANN001
            if status:
                logger.debug(f"Input status: {status}")
            if not self._active:
                return
            try:
                self._loop.call_soon_threadsafe(self._handle_frames, indata.copy())
            except RuntimeError:
                # Event loop already closed during teardown.
                self._active = False

        try:
            stream = sd.InputStream(
                device=device_id,
                samplerate=cfg.sample_rate,
                channels=cfg.channels,
                dtype="int16",
                blocksize=cfg.frames_per_chunk,
                callback=callback,
            )
        except (ValueError, sd.PortAudioError) as e:
            raise _classify_stream_error(e) from e

        self._stream = stream
        self._active = True
        try:
            await asyncio.to_thread(stream.start)
        except Exception as e:
            self.stop()
            if isinstance(e, (ValueError, sd.PortAudioError)):
                raise _classify_stream_error(e) from e
            raise

        if self._stream is not stream:
            # stop() ran while the stream was starting.
            return

        self._level_task = self._loop.create_task(self._sample_levels())
        logger.info(
            "[AUDIO][CAPTURE] started device=%r encoding=%s chunk_ms=%d aec=%s ns=%s agc=%s",
            info.get("name", device_id),
            self._encoding,
            cfg.chunk_ms,
            cfg.echo_cancellation,
            cfg.noise_suppression,
            cfg.auto_gain_control,
        )

    def stop(self) -> None:
        """Release the microphone. Safe to call repeatedly."""
        was_active = self._active
        self._active = False
        self._level = 0.0

        if self._level_task is not None:
            self._level_task.cancel()
            self._level_task = None

        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()

        if was_active:
            logger.info("[AUDIO][CAPTURE] microphone released")

    def _handle_frames(self, frames: np.ndarray) -> None:
        if not self._active:
            return
        self._last_frames = frames
        if self._muted:
            return

        samples = frames[:, 0] if frames.ndim == 2 and frames.shape[1] == 1 else frames
        chunk = codecs.encode_chunk(samples, self._encoding or codecs.WAV, self._config.sample_rate)
        for cb in list(self._chunk_callbacks):
            try:
                cb(chunk)
            except Exception:
                logger.exception("[AUDIO][CAPTURE] chunk callback failed")

    async def _sample_levels(self) -> None:
        while self._active:
            frames = self._last_frames
            if self._muted or frames is None:
                level = 0.0
            else:
                level = frequency_level(frames, self._config.fft_size)
            self._level = level
            for cb in list(self._level_callbacks):
                try:
                    cb(level)
                except Exception:
                    logger.exception("[AUDIO][CAPTURE] level callback failed")
            await asyncio.sleep(self._config.level_interval_s)
