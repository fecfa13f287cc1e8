"""Local audio subsystem.

Microphone capture, sequential playback and the live transcript:

mic -> chunks -> transport -> agent audio -> speaker

The session orchestrator owns the wiring between them.
"""

from bewerbungstrainer.voice.audio_io import AudioCaptureConfig, AudioCaptureEngine, frequency_level
from bewerbungstrainer.voice.playback import AudioPlaybackQueue, AudioSink, SounddeviceSink
from bewerbungstrainer.voice.transcript import TranscriptTimeline, transcript_from_remote

__all__ = [
    "AudioCaptureConfig",
    "AudioCaptureEngine",
    "frequency_level",
    "AudioPlaybackQueue",
    "AudioSink",
    "SounddeviceSink",
    "TranscriptTimeline",
    "transcript_from_remote",
]
