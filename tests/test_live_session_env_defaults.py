import json

import pytest

from bewerbungstrainer.orchestrator.schemas import SessionOutcome, TransportKind


def test_live_session_env_defaults_are_used(monkeypatch):
    # CLI defaults must follow the environment so the same flags work in CI and locally.
    monkeypatch.setenv("ELEVENLABS_AGENT_ID", "agent-env")
    monkeypatch.setenv("BEWERBUNGSTRAINER_MODE", "http")
    monkeypatch.setenv("BEWERBUNGSTRAINER_INPUT_DEVICE", "2")
    monkeypatch.setenv("LIVE_SESSION_ARTIFACTS_DIR", "/tmp/sessions")

    from scripts.live_session import build_parser

    args = build_parser().parse_args(["--variable", "user_name=Mia", "--no-feedback"])
    assert args.agent_id == "agent-env"
    assert args.mode == "http"
    assert args.device == "2"
    assert args.artifacts_dir == "/tmp/sessions"
    assert args.variable == ["user_name=Mia"]
    assert args.no_feedback is True


def test_variables_and_device_arguments():
    from bewerbungstrainer.main import _device_arg, parse_variables

    assert parse_variables(["a=1", " b = zwei ", "c="]) == {"a": "1", "b": "zwei", "c": ""}
    with pytest.raises(ValueError):
        parse_variables(["kein-paar"])

    assert _device_arg("3") == 3
    assert _device_arg("USB Mic") == "USB Mic"
    assert _device_arg("") is None


def test_scenario_file_is_loaded(tmp_path):
    from bewerbungstrainer.main import load_scenario

    path = tmp_path / "scenario.json"
    path.write_text(
        json.dumps(
            {
                "id": 9,
                "title": "Gehaltsverhandlung",
                "initial_message": "Hallo ${user_name}",
                "interviewer_profile": {"name": "Herr Braun", "properties": ["direkt"]},
            }
        ),
        encoding="utf-8",
    )

    scenario = load_scenario(path)
    assert scenario.id == 9
    assert scenario.interviewer_profile.name == "Herr Braun"


def test_outcome_is_saved_as_json(tmp_path):
    from scripts.live_session import save_outcome

    outcome = SessionOutcome(session_id="rec-5", transport=TransportKind.HTTP, end_reason="client_ended")

    path = save_outcome(outcome, tmp_path / "out")

    assert path.name.startswith("session_") and path.name.endswith("_rec-5.json")
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["transport"] == "http"
    assert data["end_reason"] == "client_ended"
