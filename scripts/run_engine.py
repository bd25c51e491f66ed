#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from billing_engine.config import get_settings  # noqa: E402
from billing_engine.engine import DEFAULT_JOB_NAMES, Engine, build_engine, register_default_jobs  # noqa: E402
from billing_engine.main import check_runtime_secrets, configure_logging  # noqa: E402
from billing_engine.scheduler import JobNotFoundError  # noqa: E402

logger = logging.getLogger("run_engine")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the billing notification engine outside the web server.")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("serve", help="Start every job and run until interrupted")
    run_job = subparsers.add_parser("run-job", help="Execute one job once and exit")
    run_job.add_argument("name", help="Job name, see the 'jobs' command")
    subparsers.add_parser("jobs", help="List the registered job names")
    return parser.parse_args()


async def _serve(engine: Engine) -> None:
    await engine.orchestrator.start()
    try:
        await asyncio.Event().wait()
    finally:
        await engine.orchestrator.stop()


async def _run_job(engine: Engine, name: str) -> int:
    try:
        executed = await engine.orchestrator.run_now(name)
    except JobNotFoundError:
        print(f"unknown job: {name}. Known jobs: {', '.join(DEFAULT_JOB_NAMES)}", file=sys.stderr)
        return 2
    job = engine.orchestrator.get_job(name)
    if not executed or job.last_error is not None:
        print(f"job {name} failed: {job.last_error}", file=sys.stderr)
        return 1
    return 0


def main() -> int:
    args = parse_args()
    if args.command == "jobs":
        for name in DEFAULT_JOB_NAMES:
            print(name)
        return 0

    settings = get_settings()
    configure_logging(settings.log_level)
    check_runtime_secrets(settings)
    engine = build_engine(settings)
    register_default_jobs(engine)

    if args.command == "run-job":
        return asyncio.run(_run_job(engine, args.name))

    try:
        asyncio.run(_serve(engine))
    except KeyboardInterrupt:
        logger.info("interrupted; scheduler stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
