# src/smart_planner/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds EngineState, then either:
- `run`  (default): starts the dispatcher, re-arms upcoming tasks and waits for SIGINT/SIGTERM,
- `plan USER_ID YYYY-MM-DD`: re-plans one user's day and prints the placements.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from datetime import date

from ..cli.bootstrap import create_initial_state, shutdown_engine, start_engine
from ..config import get_settings
from ..core.state import EngineState
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="smart-planner", description="Task scheduling & priority engine")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="run the job dispatcher until interrupted (default)")
    plan = sub.add_parser("plan", help="re-plan one user's day and print it")
    plan.add_argument("user_id")
    plan.add_argument("day", type=date.fromisoformat, help="calendar day, YYYY-MM-DD (UTC)")
    return parser.parse_args(argv)


async def _run_service(state: EngineState) -> None:
    armed = await start_engine(state)
    logger.info("Dispatcher running with %d task(s) armed. Press Ctrl+C to stop.", armed)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Some platforms may not support signal handlers on the loop.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
        logger.info("Signal received, shutting down...")
    finally:
        await shutdown_engine(state)


async def _plan_day(state: EngineState, user_id: str, day: date) -> None:
    await state.dispatcher.start()
    try:
        plan = await state.service.replan_day(user_id, day)
    finally:
        await shutdown_engine(state)

    if not plan.placements and not plan.failures:
        print(f"No open tasks for {user_id} on {day.isoformat()}.")
        return

    for p in plan.placements:
        print(
            f"{p.start.strftime('%H:%M')}-{p.end.strftime('%H:%M')}  "
            f"[{p.priority_level.value:<6}] {p.task_id}  (+{int(p.gap_after_seconds // 60)} min)"
        )
    for f in plan.failures:
        print(f"not placed: {f.task_id or '?'}: {f.reason}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", settings.app_name)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    if args.command == "plan":
        asyncio.run(_plan_day(state, args.user_id, args.day))
    else:
        asyncio.run(_run_service(state))

    logger.info("Bye.")


if __name__ == "__main__":
    main()
