"""
Main entry point for the Bewerbungstrainer live session client.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from bewerbungstrainer.config import get_settings
from bewerbungstrainer.errors import SessionError
from bewerbungstrainer.orchestrator.schemas import (
    Scenario,
    SessionConfig,
    SessionOutcome,
    SessionStatus,
    TranscriptEntry,
    TranscriptRole,
    TransportKind,
)
from bewerbungstrainer.orchestrator.session_orchestrator import SessionOrchestrator
from bewerbungstrainer.services.backend import BackendClient
from bewerbungstrainer.services.feedback import OllamaFeedbackGenerator
from bewerbungstrainer.transport.connectivity import ConnectivityProbe

MODES = ("auto", "native", "proxy", "http")


def setup_logging() -> None:
    """Configure application logging."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bewerbungstrainer", description="Run a live interview training session")
    p.add_argument(
        "--agent-id",
        default=os.getenv("ELEVENLABS_AGENT_ID", ""),
        help="Conversational agent id (default: ELEVENLABS_AGENT_ID, then the scenario's agent)",
    )
    p.add_argument(
        "--mode",
        choices=MODES,
        default=os.getenv("BEWERBUNGSTRAINER_MODE", "auto"),
        help="Transport to use; 'auto' probes connectivity (default: BEWERBUNGSTRAINER_MODE or auto)",
    )
    p.add_argument(
        "--device",
        default=os.getenv("BEWERBUNGSTRAINER_INPUT_DEVICE"),
        help="Input device index or name (default: BEWERBUNGSTRAINER_INPUT_DEVICE or system default)",
    )
    p.add_argument(
        "--scenario-file",
        default=os.getenv("BEWERBUNGSTRAINER_SCENARIO_FILE"),
        help="JSON scenario as delivered by the backend (default: BEWERBUNGSTRAINER_SCENARIO_FILE)",
    )
    p.add_argument(
        "--variable",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Scenario variable, repeatable",
    )
    p.add_argument("--no-feedback", action="store_true", help="Skip feedback generation after the call")
    p.add_argument("--probe-only", action="store_true", help="Test connectivity and exit")
    p.add_argument("--list-devices", action="store_true", help="List audio devices and exit")
    return p


def parse_variables(pairs: list[str]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid variable {pair!r}, expected KEY=VALUE")
        variables[key.strip()] = value.strip()
    return variables


def load_scenario(path: str | Path) -> Scenario:
    """Read a scenario JSON file."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return Scenario.model_validate(data)


def _device_arg(value: str | None) -> str | int | None:
    if value is None or value == "":
        return None
    return int(value) if value.isdigit() else value


def _print_entry(entry: TranscriptEntry) -> None:
    speaker = "Interviewer" if entry.role == TranscriptRole.AGENT else "Du"
    print(f"[{entry.time_label}] {speaker}: {entry.text}")


def _print_outcome(outcome: SessionOutcome | None) -> None:
    if outcome is None:
        return
    print(f"\nGespräch beendet ({outcome.end_reason}), Dauer {outcome.duration_seconds}s")
    if outcome.error:
        print(f"Hinweis: {outcome.error}")
    if outcome.feedback and outcome.feedback.feedback:
        print(json.dumps(outcome.feedback.feedback, ensure_ascii=False, indent=2))


async def _interact(orchestrator: SessionOrchestrator) -> None:
    """Read commands from stdin until the call ends."""
    finished = asyncio.Event()

    def on_status(status: SessionStatus) -> None:
        if status in (SessionStatus.DISCONNECTED, SessionStatus.ERROR):
            finished.set()

    remove = orchestrator.on_status(on_status)
    if orchestrator.turn_based:
        print("Enter: Aufnahme starten/senden, m: stumm, q: beenden")
    else:
        print("m: stumm, q: beenden")

    recording = False
    try:
        while orchestrator.is_active:
            read = asyncio.ensure_future(asyncio.to_thread(sys.stdin.readline))
            ended = asyncio.ensure_future(finished.wait())
            done, _ = await asyncio.wait({read, ended}, return_when=asyncio.FIRST_COMPLETED)
            if ended in done:
                print("Das Gespräch wurde beendet. Enter drücken zum Fortfahren.")
                return
            ended.cancel()

            command = read.result().strip().lower()
            if command == "q":
                return
            if command == "m":
                print("Stumm" if orchestrator.toggle_mute() else "Mikrofon an")
            elif command == "" and orchestrator.turn_based:
                if recording:
                    recording = False
                    print("... wird gesendet")
                    await orchestrator.end_user_turn()
                else:
                    recording = True
                    orchestrator.start_user_turn()
                    print("Aufnahme läuft, Enter zum Senden")
    finally:
        remove()


async def run_session(args: argparse.Namespace) -> SessionOutcome | None:
    """
    Run one live session from parsed command line arguments.

    Returns:
        The session outcome, or None for the informational modes.
    """
    settings = get_settings()
    logger = logging.getLogger(__name__)

    if args.list_devices:
        import sounddevice as sd

        print(sd.query_devices())
        return None

    scenario = load_scenario(args.scenario_file) if args.scenario_file else Scenario()
    agent_id = args.agent_id or scenario.agent_id or settings.elevenlabs_agent_id
    probe = ConnectivityProbe()

    if args.probe_only:
        direct = await probe.test(agent_id, force=True)
        relay = await probe.test_proxy()
        print(f"direct: success={direct.success} latency_ms={direct.latency_ms} error={direct.error}")
        print(f"proxy:  success={relay.success} latency_ms={relay.latency_ms} error={relay.error}")
        return None

    config = SessionConfig.from_scenario(
        scenario,
        variables=parse_variables(args.variable),
        agent_id=agent_id,
        default_first_message=settings.default_first_message,
        default_voice_id=settings.default_voice_id,
        input_device_id=_device_arg(args.device),
    )

    backend = BackendClient()
    orchestrator = SessionOrchestrator(
        transport_kind=None if args.mode == "auto" else TransportKind(args.mode),
        probe=probe,
        feedback=None if args.no_feedback else OllamaFeedbackGenerator(),
        backend=backend,
        settings=settings,
    )
    orchestrator.on_transcript(_print_entry)

    outcome: SessionOutcome | None = None
    try:
        try:
            await orchestrator.start_call(config)
        except SessionError as e:
            logger.error(f"Session could not start: {e.message}")
            print(e.user_message)
            return orchestrator.outcome

        logger.info(f"Session running via {orchestrator.transport_kind.value if orchestrator.transport_kind else '-'}")
        await _interact(orchestrator)
        outcome = await orchestrator.end_call()
    finally:
        if orchestrator.is_active:
            outcome = await orchestrator.end_call()
        await backend.close()

    _print_outcome(outcome)
    return outcome


def main() -> None:
    """Main entry point for the application."""
    setup_logging()
    args = build_parser().parse_args(sys.argv[1:])

    try:
        asyncio.run(run_session(args))
    except KeyboardInterrupt:
        print("\nSession terminated by user.")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
