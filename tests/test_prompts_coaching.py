from datetime import datetime, timezone

from bewerbungstrainer.orchestrator.coaching import extract_coaching_context, should_generate_coaching
from bewerbungstrainer.orchestrator.prompts import (
    build_enhanced_variables,
    build_system_prompt,
    clean_html_for_prompt,
    substitute_variables,
)
from bewerbungstrainer.orchestrator.schemas import (
    InterviewerProfile,
    Scenario,
    SessionConfig,
    TranscriptEntry,
    TranscriptRole,
)


def _entry(role: TranscriptRole, text: str) -> TranscriptEntry:
    return TranscriptEntry(role=role, text=text, start_seconds=0, arrival_timestamp=datetime.now(timezone.utc))


def _profile() -> InterviewerProfile:
    return InterviewerProfile(
        name="Frau Klein",
        role="Personalleiterin",
        company="Acme GmbH",
        properties=["streng", "fair"],
        typical_objections="<p>Zu wenig Erfahrung</p>",
        important_questions="",
    )


def test_clean_html_keeps_paragraphs_and_lists() -> None:
    assert clean_html_for_prompt("<p>Hallo&nbsp;Welt</p><p>Zweiter</p>") == "Hallo Welt\n\nZweiter"
    assert clean_html_for_prompt("<ul><li>Eins</li><li>Zwei</li></ul>") == "- Eins\n- Zwei"
    assert clean_html_for_prompt("Zeile<br/>Nächste") == "Zeile\nNächste"
    assert clean_html_for_prompt(None) == ""


def test_substitute_variables_supports_both_placeholder_styles() -> None:
    text = "Hallo {{ user_name }}, willkommen bei ${company}. ${unknown} bleibt."

    result = substitute_variables(text, {"user_name": "Mia", "company": "Acme"})

    assert result == "Hallo Mia, willkommen bei Acme. ${unknown} bleibt."
    assert substitute_variables("", {"a": "b"}) == ""


def test_system_prompt_appends_persona() -> None:
    scenario = Scenario(content="<p>Du führst ein Interview.</p>", interviewer_profile=_profile())

    prompt = build_system_prompt(scenario)

    assert prompt.startswith("Du führst ein Interview.\n\n## Dein Profil:")
    assert "Dein Name: Frau Klein" in prompt
    assert "Deine Rolle: Personalleiterin" in prompt
    assert "### Deine Eigenschaften:\n- streng\n- fair" in prompt
    assert "### Typische Einwände, die du vorbringen solltest:\nZu wenig Erfahrung" in prompt
    assert "Wichtige Fragen" not in prompt


def test_system_prompt_without_profile_is_cleaned_content() -> None:
    assert build_system_prompt(Scenario(content="<b>Kurz</b>")) == "Kurz"
    assert build_system_prompt(None) == ""


def test_enhanced_variables_add_interviewer_details() -> None:
    variables = {"user_name": "Mia"}

    enhanced = build_enhanced_variables(variables, _profile())

    assert enhanced == {
        "user_name": "Mia",
        "interviewer_name": "Frau Klein",
        "interviewer_role": "Personalleiterin",
        "interviewer_company": "Acme GmbH",
    }
    assert variables == {"user_name": "Mia"}


def test_config_from_scenario() -> None:
    scenario = Scenario(
        id=3,
        content="Interview bei {{company}}",
        initial_message="Guten Tag ${user_name}!",
        agent_id="agent-from-scenario",
        interviewer_profile=_profile(),
    )

    config = SessionConfig.from_scenario(
        scenario,
        variables={"user_name": "Mia", "company": "Acme"},
        default_first_message="Hallo!",
        default_voice_id="voice-default",
    )

    assert config.agent_id == "agent-from-scenario"
    assert config.first_message == "Guten Tag Mia!"
    assert config.voice_id == "voice-default"
    assert config.dynamic_variables["interviewer_name"] == "Frau Klein"
    assert config.prompt_override.startswith("Interview bei {{company}}")
    assert config.variables == {"user_name": "Mia", "company": "Acme"}


def test_config_from_scenario_falls_back_to_default_greeting() -> None:
    config = SessionConfig.from_scenario(Scenario(), agent_id="a1", default_first_message="Hallo!")

    assert config.first_message == "Hallo!"
    assert config.prompt_override is None


def test_should_generate_coaching_filters_short_and_user_turns() -> None:
    assert should_generate_coaching(_entry(TranscriptRole.AGENT, "Was sind Ihre größten Stärken?")) is True
    assert should_generate_coaching(_entry(TranscriptRole.AGENT, "Okay.")) is False
    assert should_generate_coaching(_entry(TranscriptRole.AGENT, "Okay, okay. Verstehe, interessant!")) is False
    assert should_generate_coaching(_entry(TranscriptRole.AGENT, "Mhm, ja, gut. Ja, interessant, okay.")) is False
    assert should_generate_coaching(_entry(TranscriptRole.AGENT, "Okay, und warum gerade wir?")) is True
    assert should_generate_coaching(_entry(TranscriptRole.USER, "Meine größte Stärke ist Ausdauer.")) is False


def test_coaching_context_defaults() -> None:
    assert extract_coaching_context(None)["user_role"] == "Bewerber"

    context = extract_coaching_context(
        Scenario(title="Gehalt", user_role_label="Kandidat", interviewer_profile=_profile())
    )
    assert context["scenario_title"] == "Gehalt"
    assert context["user_role"] == "Kandidat"
    assert context["agent_role"] == "Personalleiterin"
    assert context["agent_properties"] == "streng\nfair"
