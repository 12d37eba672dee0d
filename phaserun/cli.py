#!/usr/bin/env python3
"""
phaserun CLI - run a markdown change plan as durable, audited phases.

USAGE:
------
  phaserun phases PLAN [--regenerate]   - Decompose a plan and show its phases
  phaserun run PLAN [--all]             - Run the next phase (or every phase)
  phaserun skip PLAN                    - Skip the in-progress or failed phase
  phaserun status PLAN                  - Show progress and what runs next

WORKFLOW:
--------
  1. Write a plan (## Objective, ## Changes, ...)
  2. `phaserun phases plan.md` to review the decomposition
  3. `phaserun run plan.md --all` until done, audit_failed or blocked
  4. Fix, skip or regenerate, then run again

Ctrl-C during a run cancels the agent; the phase goes back to pending.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml
from rich.console import Console
from rich.logging import RichHandler

from . import __version__, ui
from .config import Config, load_config
from .engine import PhaseEngine, PlanLockRegistry
from .plan_parser import derive_plan_id
from .scheduler import get_next_phase
from .store import PhaseStateError, PhaseStore


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="phaserun",
        description="Run a markdown change plan as dependency-ordered, audited agent phases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  phaserun phases plans/plan-011.md
  phaserun run plans/plan-011.md --all
  phaserun skip plans/plan-011.md
  phaserun phases plans/plan-011.md --regenerate
        """
    )

    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Config file (default: ~/.phaserun/config.yaml, ./phaserun.yaml)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging and agent text output"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"phaserun {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    phases_parser = subparsers.add_parser("phases", help="Decompose a plan and show its phases")
    phases_parser.add_argument("plan", type=Path, help="Plan markdown file")
    phases_parser.add_argument(
        "--regenerate",
        action="store_true",
        help="Discard existing phase state and decompose the plan again"
    )

    run_parser = subparsers.add_parser("run", help="Run the next eligible phase")
    run_parser.add_argument("plan", type=Path, help="Plan markdown file")
    run_parser.add_argument(
        "--all",
        action="store_true",
        help="Keep running phases until one does not finish cleanly"
    )

    skip_parser = subparsers.add_parser("skip", help="Skip the in-progress or failed phase")
    skip_parser.add_argument("plan", type=Path, help="Plan markdown file")

    status_parser = subparsers.add_parser("status", help="Show plan progress")
    status_parser.add_argument("plan", type=Path, help="Plan markdown file")

    return parser


def setup_logging(level: str, verbose: bool = False) -> None:
    """Log to stderr through rich so log lines don't tangle with tables."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


# =============================================================================
# COMMANDS
# =============================================================================

def build_engine(config: Config, plan_path: Path) -> PhaseEngine:
    state_dir = config.paths.state_dir_path or plan_path.resolve().parent
    return PhaseEngine.from_config(config, store=PhaseStore(state_dir), locks=PlanLockRegistry())


def _plan_id(plan_path: Path) -> str:
    return derive_plan_id(plan_path, plan_path.read_text(encoding="utf-8"))


def cmd_phases(engine: PhaseEngine, plan_path: Path, regenerate: bool) -> int:
    phases = engine.ensure_phases(_plan_id(plan_path), plan_path, regenerate=regenerate)
    ui.show_phases(phases)
    return 0


def cmd_status(engine: PhaseEngine, plan_path: Path) -> int:
    plan_id = _plan_id(plan_path)
    phases = engine.store.load(plan_id)
    if phases is None:
        ui.show_info(f"No phases yet for {plan_id}. Run `phaserun phases {plan_path}`.")
        return 0

    ui.show_phases(phases)
    if engine.is_complete(plan_id):
        ui.show_success("All phases complete.")
    else:
        next_phase = get_next_phase(phases)
        if next_phase:
            ui.show_info(f"Next: {next_phase.id} ({next_phase.status.value}) {next_phase.title}")
        else:
            ui.show_warning("No phase is eligible to run.")
    return 0


def cmd_skip(engine: PhaseEngine, plan_path: Path) -> int:
    skipped = engine.skip_phase(_plan_id(plan_path))
    if skipped is None:
        ui.show_info("Nothing to skip: no phase is in progress or failed.")
        return 0
    ui.show_success(f"Skipped {skipped.id}: {skipped.title}")
    return 0


async def cmd_run(engine: PhaseEngine, plan_path: Path, run_all: bool, verbose: bool) -> int:
    plan_id = _plan_id(plan_path)
    cancel_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except NotImplementedError:
        pass  # Windows: Ctrl-C falls back to KeyboardInterrupt

    def observer(event):
        ui.render_stream_event(event, verbose=verbose)

    try:
        while True:
            result = await engine.run_next_phase(
                plan_id,
                plan_path,
                on_progress=ui.show_progress,
                cancel_event=cancel_event,
                observer=observer,
            )
            ui.show_run_result(result)

            if result.result != "done" or not run_all or cancel_event.is_set():
                break
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass

    return 0 if result.result in ("done", "nothing_to_run") else 1


async def async_main(args: argparse.Namespace, config: Config) -> int:
    """
    Dispatch a subcommand.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    plan_path: Path = args.plan.expanduser()
    if not plan_path.is_file():
        ui.show_error(f"Plan file not found: {plan_path}")
        return 1

    engine = build_engine(config, plan_path)

    try:
        if args.command == "phases":
            return cmd_phases(engine, plan_path, args.regenerate)
        if args.command == "status":
            return cmd_status(engine, plan_path)
        if args.command == "skip":
            return cmd_skip(engine, plan_path)
        return await cmd_run(engine, plan_path, args.all, args.verbose)
    except PhaseStateError as e:
        ui.show_error(f"Phase state is corrupt: {e}")
        ui.show_info(f"Fix the state files or run `phaserun phases {plan_path} --regenerate`.")
        return 1


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        parser.error(str(e))

    setup_logging(config.logging.level, args.verbose)

    try:
        exit_code = asyncio.run(async_main(args, config))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        ui.console.print("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
