#!/usr/bin/env python

import argparse
import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path

from bewerbungstrainer.main import build_parser as build_session_parser
from bewerbungstrainer.main import run_session, setup_logging
from bewerbungstrainer.orchestrator.schemas import SessionOutcome


def build_parser() -> argparse.ArgumentParser:
    p = build_session_parser()
    p.prog = "live_session"
    p.description = "Run a live training session and store its outcome"
    p.add_argument(
        "--artifacts-dir",
        default=os.getenv("LIVE_SESSION_ARTIFACTS_DIR", "data/sessions"),
        help="Where to store session outcomes (default: LIVE_SESSION_ARTIFACTS_DIR or data/sessions)",
    )
    return p


def save_outcome(outcome: SessionOutcome, artifacts_dir: str | Path) -> Path:
    directory = Path(artifacts_dir)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    path = directory / f"session_{stamp}_{outcome.session_id or 'local'}.json"
    path.write_text(json.dumps(outcome.model_dump(mode="json"), ensure_ascii=False, indent=2), encoding="utf-8")
    return path


async def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    outcome = await run_session(args)
    if outcome is not None:
        path = save_outcome(outcome, args.artifacts_dir)
        print(f"Outcome saved to {path}")


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        raise SystemExit(0)
