"""Prompt assembly for conversational agents.

Scenario content arrives as WordPress HTML. The agent needs plain text with
paragraph structure kept intact, followed by the interviewer persona.
"""

from __future__ import annotations

import html
import re

from bewerbungstrainer.orchestrator.schemas import InterviewerProfile, Scenario


_PARAGRAPH_GAP_RE = re.compile(r"</p>\s*<p[^>]*>", re.IGNORECASE)
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_BLOCK_RE = re.compile(r"</?(p|div|h[1-6])[^>]*>", re.IGNORECASE)
_LI_OPEN_RE = re.compile(r"<li[^>]*>", re.IGNORECASE)
_LI_CLOSE_RE = re.compile(r"</li>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_VARIABLE_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}|\$\{\s*(\w+)\s*\}")


def clean_html_for_prompt(text: str | list[str] | None) -> str:
    """Turn WordPress HTML into prompt-friendly plain text."""
    if not text:
        return ""
    if isinstance(text, list):
        text = "\n".join(f"- {item}" for item in text if item)

    cleaned = _PARAGRAPH_GAP_RE.sub("\n\n", text)
    cleaned = _BR_RE.sub("\n", cleaned)
    cleaned = _BLOCK_RE.sub("\n", cleaned)
    cleaned = _LI_OPEN_RE.sub("\n- ", cleaned)
    cleaned = _LI_CLOSE_RE.sub("", cleaned)
    cleaned = html.unescape(_TAG_RE.sub("", cleaned))

    cleaned = re.sub(r"[ \t\xa0]+", " ", cleaned)
    cleaned = cleaned.replace("\n ", "\n").replace(" \n", "\n")
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def substitute_variables(text: str, variables: dict[str, str]) -> str:
    """Replace ``{{name}}`` and ``${name}`` placeholders; unknown names stay."""
    if not text:
        return ""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1) or match.group(2)
        value = variables.get(key)
        return match.group(0) if value is None else str(value)

    return _VARIABLE_RE.sub(_replace, text)


def build_system_prompt(scenario: Scenario | None) -> str:
    """Scenario content plus the interviewer persona block."""
    if scenario is None:
        return ""

    prompt = clean_html_for_prompt(scenario.content)
    profile = scenario.interviewer_profile
    if profile is None:
        return prompt

    prompt += "\n\n## Dein Profil:\n"
    if profile.name:
        prompt += f"\nDein Name: {profile.name}"
    if profile.role:
        prompt += f"\nDeine Rolle: {profile.role}"
    if profile.properties:
        prompt += f"\n\n### Deine Eigenschaften:\n{clean_html_for_prompt(profile.properties)}"
    if profile.typical_objections:
        prompt += (
            "\n\n### Typische Einwände, die du vorbringen solltest:\n"
            f"{clean_html_for_prompt(profile.typical_objections)}"
        )
    if profile.important_questions:
        prompt += (
            "\n\n### Wichtige Fragen, die du stellen solltest:\n"
            f"{clean_html_for_prompt(profile.important_questions)}"
        )
    return prompt


def build_enhanced_variables(
    variables: dict[str, str] | None,
    profile: InterviewerProfile | None,
) -> dict[str, str]:
    """Copy ``variables`` and add the interviewer's name, role and company."""
    enhanced = {key: str(value) for key, value in (variables or {}).items()}
    if profile is None:
        return enhanced

    if profile.name:
        enhanced["interviewer_name"] = profile.name
    if profile.role:
        enhanced["interviewer_role"] = profile.role
    if profile.company:
        enhanced["interviewer_company"] = profile.company
    return enhanced
