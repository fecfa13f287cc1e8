"""Speaker-labeled transcript with inferred utterance start times.

Arrival time is not utterance start time: user transcripts arrive only after
speech-to-text finalizes. Start times are inferred from turn-taking:

- an agent message starts where the previous message (either role) ended,
  and marks the end of both the turn and the agent's speech;
- a user message starts where the agent last stopped speaking, and marks
  the end of the turn only.

This is a heuristic. It drifts when the user talks over the agent or pauses
long after the agent finishes.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from bewerbungstrainer.orchestrator.schemas import TranscriptEntry, TranscriptRole

logger = logging.getLogger(__name__)

_AGENT_ROLES = {"agent", "ai", "interviewer", "assistant"}


class TranscriptTimeline:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = clock
        self._wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))
        self._entries: list[TranscriptEntry] = []
        self._started_at: float | None = None
        self._last_turn_end = 0
        self._last_agent_end = 0

    def start(self) -> None:
        """Anchor elapsed time at now and reset both cursors."""
        self._started_at = self._clock()
        self._entries = []
        self._last_turn_end = 0
        self._last_agent_end = 0

    @property
    def entries(self) -> list[TranscriptEntry]:
        return self._entries.copy()

    def __len__(self) -> int:
        return len(self._entries)

    def elapsed_seconds(self) -> int:
        if self._started_at is None:
            return 0
        return max(0, int(self._clock() - self._started_at))

    def append(
        self,
        role: TranscriptRole | str,
        text: str,
        elapsed_seconds: int | None = None,
    ) -> TranscriptEntry | None:
        """
        Record an arrived message.

        Args:
            role: Speaker of the message.
            text: Message text; blank text is ignored.
            elapsed_seconds: Arrival time relative to session start. Defaults
                to the timeline's own clock.

        Returns:
            The appended entry, or None if the text was blank.
        """
        text = (text or "").strip()
        if not text:
            logger.debug("[TRANSCRIPT] ignoring empty %s message", role)
            return None

        role = TranscriptRole(role)
        now = self.elapsed_seconds() if elapsed_seconds is None else max(0, int(elapsed_seconds))

        if role == TranscriptRole.AGENT:
            start = self._last_turn_end
            self._last_turn_end = now
            self._last_agent_end = now
        else:
            start = self._last_agent_end
            self._last_turn_end = now

        entry = TranscriptEntry(
            role=role,
            text=text,
            start_seconds=start,
            arrival_timestamp=self._wall_clock(),
        )
        self._entries.append(entry)
        return entry


def transcript_from_remote(items: list[dict[str, Any]]) -> list[TranscriptEntry]:
    """
    Convert a backend-held transcript into entries.

    Items carry ``role`` (``interviewer``/``user``), ``text`` and a unix
    ``timestamp``; start times are taken relative to the first timestamp.
    """
    entries: list[TranscriptEntry] = []
    first_ts: float | None = None

    for item in items or []:
        text = str(item.get("text") or "").strip()
        if not text:
            continue

        raw_role = str(item.get("role") or "").lower()
        role = TranscriptRole.AGENT if raw_role in _AGENT_ROLES else TranscriptRole.USER

        ts = item.get("timestamp")
        start = 0
        arrival = datetime.now(timezone.utc)
        if isinstance(ts, (int, float)):
            if first_ts is None:
                first_ts = float(ts)
            start = max(0, int(ts - first_ts))
            arrival = datetime.fromtimestamp(ts, tz=timezone.utc)

        entries.append(
            TranscriptEntry(role=role, text=text, start_seconds=start, arrival_timestamp=arrival)
        )
    return entries
