"""Live coaching integration points.

The orchestrator calls a coaching hook for agent utterances worth reacting
to. How coaching text is produced is up to the hook.
"""

from __future__ import annotations

import re
from typing import Any, Awaitable, Protocol

from bewerbungstrainer.orchestrator.schemas import Scenario, TranscriptEntry, TranscriptRole


MIN_COACHING_CHARS = 20
SKIP_PHRASES = frozenset({"mhm", "ja", "okay", "verstehe", "interessant", "gut"})


class CoachingHook(Protocol):
    def __call__(
        self,
        entry: TranscriptEntry,
        transcript: list[TranscriptEntry],
        context: dict[str, Any],
    ) -> Awaitable[None]: ...


def should_generate_coaching(entry: TranscriptEntry) -> bool:
    """True for substantive agent utterances, not just acknowledgements."""
    if entry.role != TranscriptRole.AGENT:
        return False
    words = re.findall(r"\w+", entry.text.lower())
    if not words or all(word in SKIP_PHRASES for word in words):
        return False
    return len(entry.text.strip()) >= MIN_COACHING_CHARS


def _join(value: str | list[str]) -> str:
    if isinstance(value, list):
        return "\n".join(value)
    return value or ""


def extract_coaching_context(scenario: Scenario | None) -> dict[str, Any]:
    """Scenario and persona details a coaching hook needs."""
    profile = scenario.interviewer_profile if scenario and scenario.interviewer_profile else None

    return {
        "scenario_title": scenario.title if scenario else "",
        "scenario_description": scenario.description if scenario else "",
        "user_role": (scenario.user_role_label if scenario else None) or "Bewerber",
        "agent_role": (profile.role if profile else "") or "Interviewer",
        "agent_name": profile.name if profile else "",
        "agent_properties": _join(profile.properties) if profile else "",
        "agent_pain_points": _join(profile.typical_objections) if profile else "",
        "agent_questions": _join(profile.important_questions) if profile else "",
    }
