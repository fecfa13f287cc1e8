"""
Post-session feedback generation.

The orchestrator only depends on ``FeedbackGenerator``. The bundled
implementation runs a local model through the Ollama CLI and parses the
JSON object it is asked to return.
"""

import ast
import asyncio
import json
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from typing import Any

from bewerbungstrainer.config import get_settings
from bewerbungstrainer.orchestrator.schemas import FeedbackResult, TranscriptEntry, TranscriptRole

logger = logging.getLogger(__name__)

RATING_DIMENSIONS = {
    "overall": "Gesamteindruck",
    "content": "Inhalt & Argumentation",
    "structure": "Struktur & Aufbau",
    "relevance": "Relevanz & Bezug",
    "delivery": "Präsentation & Auftreten",
}

ANALYSIS_FOCUS = (
    "Struktur und Klarheit der Antworten (STAR-Methode)",
    "Relevante Beispiele und messbare Erfolge",
    "Authentische Motivation und Interesse",
    "Selbstbewusstsein und professionelles Auftreten",
)

FEEDBACK_JSON_FORMAT = """Antworte NUR mit diesem JSON-Objekt:
{
  "summary": "2-3 Sätze Gesamteindruck",
  "strengths": ["Konkrete positive Beobachtung mit Beispiel aus dem Gespräch"],
  "improvements": ["Was genau war suboptimal und warum?"],
  "tips": ["Konkreter, sofort umsetzbarer Ratschlag"],
  "rating": {%s}
}"""


class OllamaError(Exception):
    """Exception raised when the Ollama CLI fails."""

    def __init__(self, message: str, return_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


def format_transcript_for_feedback(
    entries: list[TranscriptEntry],
    context: dict[str, Any] | None = None,
) -> str:
    """
    Render a transcript for the feedback model.

    Args:
        entries: Finalized transcript entries.
        context: Optional scenario context (``scenario_title``,
            ``scenario_description``, ``variables``, role labels).

    Returns:
        Header lines followed by one ``[mm:ss] Speaker: text`` line per entry.
    """
    context = context or {}
    agent_label = context.get("agent_role") or "Interviewer"
    user_label = context.get("user_role") or "Bewerber"

    lines: list[str] = []
    if context.get("scenario_title"):
        lines.append(f"Rollenspiel-Szenario: {context['scenario_title']}")
    if context.get("scenario_description"):
        lines.append(f"Beschreibung: {context['scenario_description']}")
    variables = context.get("variables") or {}
    if variables:
        lines.append("")
        lines.append("Kontext-Variablen:")
        lines.extend(f"- {key}: {value}" for key, value in variables.items())
    if lines:
        lines.append("")
    lines.append("--- Gesprächsverlauf ---")
    lines.append("")

    for entry in entries:
        speaker = agent_label if entry.role == TranscriptRole.AGENT else user_label
        lines.append(f"[{entry.time_label}] {speaker}: {entry.text}")

    return "\n".join(lines)


def build_feedback_prompt(transcript_text: str, context: dict[str, Any] | None = None) -> str:
    """Assemble the coaching prompt around ``transcript_text``."""
    context = context or {}
    custom = (context.get("feedback_prompt") or "").strip()
    rating = ", ".join(f'"{key}": 0' for key in RATING_DIMENSIONS)
    json_format = FEEDBACK_JSON_FORMAT % rating

    if custom:
        if "${transcript}" in custom:
            prompt = custom.replace("${transcript}", transcript_text)
            if '"summary"' in prompt.lower() or '"strengths"' in prompt.lower():
                return prompt
            return f"{prompt}\n\n{json_format}"
        return (
            f"{custom}\n\n=== TRANSKRIPT ===\n{transcript_text}\n=== ENDE TRANSKRIPT ===\n\n"
            f"Analysiere das obige Transkript und gib dein Feedback.\n{json_format}"
        )

    user_label = context.get("user_role") or "Bewerber"
    dimensions = "\n".join(f"- **{label}** ({key})" for key, label in RATING_DIMENSIONS.items())
    focus = "\n".join(f"- {item}" for item in ANALYSIS_FOCUS)
    return f"""Du bist ein erfahrener Karriere-Coach und Interview-Trainer. Analysiere das folgende Gespräch und gib konstruktives, praxisnahes Feedback auf Deutsch.

## BEWERTUNGS-DIMENSIONEN (jeweils 1-10)
{dimensions}

## ANALYSE-FOKUS
{focus}

## AUSGABEFORMAT
{json_format}

## WICHTIG
- Gib 2-4 Items pro Kategorie (strengths, improvements, tips)
- Beziehe dich auf KONKRETE Aussagen aus dem Transkript
- Bewerte NUR den/die {user_label}, NICHT den Gesprächspartner

---
TRANSKRIPT:
{transcript_text}

JSON Feedback:"""


def _repair_feedback_json(text: str) -> str:
    """Rewrite near-JSON model output into JSON."""
    result = text.replace("“", '"').replace("”", '"').replace("‘", "'").replace("’", "'")

    # Trailing commas before closing braces/brackets.
    result = re.sub(r",(\s*[}\]])", r"\1", result)

    result = re.sub(r"\bNone\b", "null", result)
    result = re.sub(r"\bTrue\b", "true", result)
    result = re.sub(r"\bFalse\b", "false", result)

    # Bare keys right after { or ,
    result = re.sub(
        r"([\{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)",
        r'\1"\2"\3',
        result,
    )

    if result.count("'") > 0 and result.count('"') == 0:
        result = result.replace("'", '"')

    return result


def _parse_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(_repair_feedback_json(text))
    except json.JSONDecodeError:
        try:
            parsed = ast.literal_eval(text)
        except (ValueError, SyntaxError, TypeError):
            return None
    if not isinstance(parsed, dict):
        return None
    return json.loads(json.dumps(parsed, default=str))


def extract_json_object(content: str) -> dict[str, Any]:
    """Parse the first balanced ``{...}`` block of a model reply; empty dict when none parses."""
    content = content.strip()
    start_idx = content.find("{")
    if start_idx == -1:
        return {}

    depth = 0
    end_idx = len(content)
    for i, char in enumerate(content[start_idx:], start=start_idx):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                end_idx = i + 1
                break
    return _parse_object(content[start_idx:end_idx]) or {}


class FeedbackGenerator(ABC):
    """Abstract base class for feedback generators."""

    @abstractmethod
    async def generate(
        self,
        transcript_text: str,
        context: dict[str, Any],
        audio: bytes | None = None,
    ) -> FeedbackResult:
        """
        Produce structured feedback for a finished session.

        Args:
            transcript_text: Output of ``format_transcript_for_feedback``.
            context: Scenario context and feedback instructions.
            audio: Full-session recording, when it could be retrieved.

        Returns:
            Parsed feedback and optional audio analysis.
        """
        ...


class OllamaFeedbackGenerator(FeedbackGenerator):
    """
    Ollama-based feedback generator.

    Runs ``ollama run <model>`` with the prompt on stdin. Audio is not
    analyzed by this generator.
    """

    def __init__(
        self,
        model: str | None = None,
        max_retries: int | None = None,
        timeout: int | None = None,
    ) -> None:
        settings = get_settings()
        self._model = model or settings.feedback_model_name
        self._max_retries = settings.feedback_max_retries if max_retries is None else max_retries
        self._timeout = timeout or settings.feedback_timeout

    @property
    def model(self) -> str:
        return self._model

    def _run_ollama_sync(self, prompt: str) -> str:
        """
        Run the Ollama CLI with retry logic.

        Raises:
            OllamaError: If Ollama fails after all retries.
        """
        cmd = ["ollama", "run", self._model]
        last_error: OllamaError | None = None
        attempts = 0

        while attempts <= self._max_retries:
            attempts += 1
            try:
                logger.debug(f"Running Ollama (attempt {attempts}): {' '.join(cmd)}")
                process = subprocess.run(
                    cmd,
                    input=prompt,
                    capture_output=True,
                    text=True,
                    timeout=self._timeout,
                )
            except subprocess.TimeoutExpired:
                logger.warning(f"Ollama timed out after {self._timeout}s (attempt {attempts})")
                last_error = OllamaError(f"Ollama timed out after {self._timeout} seconds")
                continue
            except FileNotFoundError as e:
                error_msg = "Ollama CLI not found. Please install Ollama: https://ollama.ai"
                logger.error(error_msg)
                raise OllamaError(error_msg) from e

            if process.returncode != 0:
                error_msg = process.stderr.strip() or f"Exit code: {process.returncode}"
                logger.warning(f"Ollama failed (attempt {attempts}): {error_msg}")
                last_error = OllamaError(
                    f"Ollama exited with code {process.returncode}",
                    return_code=process.returncode,
                    stderr=process.stderr,
                )
                continue

            response = process.stdout.strip()
            logger.debug(f"Ollama response length: {len(response)} chars")
            return response

        raise last_error or OllamaError("Ollama failed after all retries")

    async def _run_ollama(self, prompt: str) -> str:
        return await asyncio.to_thread(self._run_ollama_sync, prompt)

    async def generate(
        self,
        transcript_text: str,
        context: dict[str, Any],
        audio: bytes | None = None,
    ) -> FeedbackResult:
        prompt = build_feedback_prompt(transcript_text, context)
        if audio:
            logger.info(f"Session audio available ({len(audio)} bytes); not analyzed by {self._model}")

        raw = await self._run_ollama(prompt)
        feedback = extract_json_object(raw)
        if not feedback:
            logger.warning(f"Feedback reply was not valid JSON: {raw[:200]!r}")
        return FeedbackResult(feedback=feedback, audio_analysis=None, raw_text=raw)
