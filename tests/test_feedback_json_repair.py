import subprocess
from datetime import datetime, timezone

import pytest

from bewerbungstrainer.orchestrator.schemas import TranscriptEntry, TranscriptRole
from bewerbungstrainer.services.feedback import (
    OllamaError,
    OllamaFeedbackGenerator,
    build_feedback_prompt,
    extract_json_object,
    format_transcript_for_feedback,
)


def test_extract_repairs_single_quotes_and_trailing_commas() -> None:
    assert extract_json_object("{'a': 1, 'b': 'x',}") == {"a": 1, "b": "x"}


def test_extract_repairs_unquoted_keys_and_fenced_json() -> None:
    content = """```json
    {a: 1, b: true, c: null,}
    ```"""

    assert extract_json_object(content) == {"a": 1, "b": True, "c": None}


def test_extract_handles_python_literals_and_surrounding_prose() -> None:
    assert extract_json_object("{'ok': True, 'n': None}") == {"ok": True, "n": None}

    content = 'Hier ist das Feedback:\n{"summary": "Gut", "rating": {"overall": 8}}\nViel Erfolg!'
    assert extract_json_object(content) == {"summary": "Gut", "rating": {"overall": 8}}


def test_extract_returns_empty_dict_without_json() -> None:
    assert extract_json_object("Leider kein JSON.") == {}
    assert extract_json_object("") == {}
    assert extract_json_object("[1, 2, 3]") == {}
    assert extract_json_object("{kaputt: [}") == {}


@pytest.mark.asyncio
async def test_generate_parses_model_reply() -> None:
    generator = OllamaFeedbackGenerator(model="test-model")
    prompts = []

    async def fake_run(prompt: str) -> str:
        prompts.append(prompt)
        return "```json\n{'summary': 'Klar strukturiert', 'rating': {'overall': 8},}\n```"

    generator._run_ollama = fake_run  # type: ignore[assignment]

    result = await generator.generate("[00:00] Interviewer: Hallo", {"user_role": "Bewerber"}, audio=b"RIFF")

    assert result.feedback == {"summary": "Klar strukturiert", "rating": {"overall": 8}}
    assert result.audio_analysis is None
    assert "[00:00] Interviewer: Hallo" in prompts[0]


def test_ollama_is_retried_after_failure(monkeypatch) -> None:
    calls = []

    def fake_run(cmd, **kwargs):  # noqa: ANN001, ANN003
        calls.append(cmd)
        if len(calls) == 1:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="model loading")
        return subprocess.CompletedProcess(cmd, 0, stdout=' {"summary": "ok"} \n', stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    generator = OllamaFeedbackGenerator(model="test-model", max_retries=1, timeout=5)

    assert generator._run_ollama_sync("prompt") == '{"summary": "ok"}'
    assert calls == [["ollama", "run", "test-model"], ["ollama", "run", "test-model"]]


def test_ollama_failure_after_retries_raises(monkeypatch) -> None:
    def fake_run(cmd, **kwargs):  # noqa: ANN001, ANN003
        return subprocess.CompletedProcess(cmd, 2, stdout="", stderr="boom")

    monkeypatch.setattr(subprocess, "run", fake_run)
    generator = OllamaFeedbackGenerator(model="test-model", max_retries=0, timeout=5)

    with pytest.raises(OllamaError) as excinfo:
        generator._run_ollama_sync("prompt")
    assert excinfo.value.return_code == 2
    assert excinfo.value.stderr == "boom"


def test_missing_ollama_cli_is_not_retried(monkeypatch) -> None:
    calls = []

    def fake_run(cmd, **kwargs):  # noqa: ANN001, ANN003
        calls.append(cmd)
        raise FileNotFoundError("ollama")

    monkeypatch.setattr(subprocess, "run", fake_run)
    generator = OllamaFeedbackGenerator(model="test-model", max_retries=3, timeout=5)

    with pytest.raises(OllamaError):
        generator._run_ollama_sync("prompt")
    assert len(calls) == 1


def test_transcript_format_for_feedback() -> None:
    now = datetime.now(timezone.utc)
    entries = [
        TranscriptEntry(role=TranscriptRole.AGENT, text="Erzählen Sie von sich.", start_seconds=0, arrival_timestamp=now),
        TranscriptEntry(role=TranscriptRole.USER, text="Ich bin Mia.", start_seconds=65, arrival_timestamp=now),
    ]

    text = format_transcript_for_feedback(
        entries,
        {"scenario_title": "Bewerbung", "variables": {"position": "Entwicklerin"}, "user_role": "Kandidatin"},
    )

    assert text.splitlines() == [
        "Rollenspiel-Szenario: Bewerbung",
        "",
        "Kontext-Variablen:",
        "- position: Entwicklerin",
        "",
        "--- Gesprächsverlauf ---",
        "",
        "[00:00] Interviewer: Erzählen Sie von sich.",
        "[01:05] Kandidatin: Ich bin Mia.",
    ]


def test_custom_feedback_prompt_wraps_transcript() -> None:
    prompt = build_feedback_prompt("TRANSKRIPT-TEXT", {"feedback_prompt": "Bewerte die Verhandlung."})

    assert prompt.startswith("Bewerte die Verhandlung.\n\n=== TRANSKRIPT ===\nTRANSKRIPT-TEXT")
    assert '"rating": {"overall": 0' in prompt


def test_custom_prompt_with_placeholder_and_format_is_used_verbatim() -> None:
    custom = 'Analysiere: ${transcript}\nAntworte mit {"summary": "..."}'

    assert build_feedback_prompt("abc", {"feedback_prompt": custom}) == 'Analysiere: abc\nAntworte mit {"summary": "..."}'


def test_default_prompt_names_the_rated_role() -> None:
    prompt = build_feedback_prompt("abc", {"user_role": "Verkäufer"})

    assert "Bewerte NUR den/die Verkäufer" in prompt
    assert prompt.endswith("TRANSKRIPT:\nabc\n\nJSON Feedback:")
