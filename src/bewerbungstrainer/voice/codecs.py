"""
Audio codec utilities.

Streaming transports carry raw 16-bit PCM. Whole utterances and downloaded
replies use containers that libsndfile (via soundfile) can read and write.
The encoder is chosen by asking libsndfile which subtypes it supports.
"""

import io
import logging

import numpy as np
import soundfile as sf

from bewerbungstrainer.errors import DecodeError
from bewerbungstrainer.orchestrator.schemas import AudioChunk

logger = logging.getLogger(__name__)

PCM_S16LE = "audio/pcm"
OGG_OPUS = "audio/ogg;codecs=opus"
OGG_VORBIS = "audio/ogg;codecs=vorbis"
WAV = "audio/wav"
MPEG = "audio/mpeg"

CONTAINER_PREFERENCE = (OGG_OPUS, OGG_VORBIS, WAV)

# mime -> (libsndfile format, subtype)
_SOUNDFILE_FORMATS = {
    OGG_OPUS: ("OGG", "OPUS"),
    OGG_VORBIS: ("OGG", "VORBIS"),
    WAV: ("WAV", "PCM_16"),
}


def pcm_encoding(sample_rate: int = 16000) -> str:
    """Mime identifier for raw PCM at ``sample_rate``."""
    return f"{PCM_S16LE};rate={sample_rate}"


def base_type(encoding: str) -> str:
    return (encoding or "").split(";", 1)[0].strip().lower()


def _parse_rate(encoding: str, default: int) -> int:
    for param in encoding.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "rate" and value.strip().isdigit():
            return int(value.strip())
    return default


def encoding_from_output_format(output_format: str | None) -> str:
    """Map a conversational service format (``pcm_16000``, ``mp3_44100``) to a mime id."""
    fmt = (output_format or "pcm_16000").lower()
    codec, _, rate = fmt.partition("_")
    if codec == "pcm":
        return pcm_encoding(int(rate) if rate.isdigit() else 16000)
    if codec == "mp3":
        return MPEG
    return fmt


def is_supported(encoding: str) -> bool:
    """Whether ``encoding`` can be written on this system."""
    if base_type(encoding) == PCM_S16LE:
        return True
    fmt = _SOUNDFILE_FORMATS.get(encoding)
    if fmt is None:
        return False
    container, subtype = fmt
    return subtype in sf.available_subtypes(container)


def best_supported_encoding(preference: tuple[str, ...] = CONTAINER_PREFERENCE) -> str:
    """First writable container in ``preference``, WAV if none probe positive."""
    for encoding in preference:
        if is_supported(encoding):
            return encoding
    return WAV


def to_int16(samples: np.ndarray) -> np.ndarray:
    """Convert float [-1, 1] or int16 samples to int16."""
    if samples.dtype == np.int16:
        return samples
    clipped = np.clip(samples.astype(np.float32), -1.0, 1.0)
    return (clipped * 32767.0).astype(np.int16)


def encode(samples: np.ndarray, encoding: str, sample_rate: int = 16000) -> bytes:
    """Encode mono or multi-channel samples into ``encoding``."""
    pcm = to_int16(np.asarray(samples))

    if base_type(encoding) == PCM_S16LE:
        return pcm.astype("<i2", copy=False).tobytes()

    fmt = _SOUNDFILE_FORMATS.get(encoding)
    if fmt is None:
        raise ValueError(f"Unsupported encoding: {encoding}")
    container, subtype = fmt

    buf = io.BytesIO()
    sf.write(buf, pcm, sample_rate, format=container, subtype=subtype)
    return buf.getvalue()


def encode_chunk(samples: np.ndarray, encoding: str, sample_rate: int = 16000) -> AudioChunk:
    channels = 1 if samples.ndim == 1 else samples.shape[1]
    if base_type(encoding) == PCM_S16LE and "rate=" not in encoding:
        encoding = pcm_encoding(sample_rate)
    return AudioChunk(
        data=encode(samples, encoding, sample_rate),
        encoding=encoding,
        sample_rate=sample_rate,
        channels=channels,
    )


def decode(data: bytes, encoding: str, sample_rate: int = 16000) -> tuple[np.ndarray, int]:
    """
    Decode audio bytes to float32 samples.

    Args:
        data: Encoded audio.
        encoding: Mime identifier of ``data``.
        sample_rate: Fallback rate for raw PCM without a ``rate`` parameter.

    Returns:
        Tuple of (float32 samples shaped [frames] or [frames, channels], sample rate).

    Raises:
        DecodeError: If the payload is empty, truncated or unreadable.
    """
    if not data:
        raise DecodeError("Empty audio payload")

    if base_type(encoding) == PCM_S16LE:
        if len(data) % 2:
            raise DecodeError(f"Truncated PCM frame ({len(data)} bytes)")
        pcm = np.frombuffer(data, dtype="<i2")
        return pcm.astype(np.float32) / 32768.0, _parse_rate(encoding, sample_rate)

    try:
        samples, sr = sf.read(io.BytesIO(data), dtype="float32")
    except Exception as e:
        raise DecodeError(f"Cannot decode {encoding or 'audio'}: {e}") from e
    if samples.size == 0:
        raise DecodeError("Decoded audio is empty")
    return samples, sr


def decode_chunk(chunk: AudioChunk) -> tuple[np.ndarray, int]:
    return decode(chunk.data, chunk.encoding, chunk.sample_rate)
