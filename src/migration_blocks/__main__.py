"""Entry point: ``python -m migration_blocks PLAN [PROJECT_ROOT] [options]``.

Loads a YAML plan, runs it against the project root (default: current
directory), and exits non-zero if any block failed. ``--ai-provider`` picks
the assistant CLI for AI blocks that do not name one themselves.

Logging goes to stderr; set MIGRATION_LOG_LEVEL to DEBUG, INFO, WARNING,
ERROR or CRITICAL (default INFO).
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from .engine.assistant import AssistantKind
from .engine.execution_context import ExecutionContext
from .engine.loader import load_plan_from_file
from .engine.plan_runner import PlanRunner

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure root logging from MIGRATION_LOG_LEVEL."""
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv("MIGRATION_LOG_LEVEL", "INFO").upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid MIGRATION_LOG_LEVEL '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(valid_log_levels))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    logging.basicConfig(
        level=getattr(logging, log_level_str),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="migration-blocks", description="Run a migration plan of blocks"
    )
    parser.add_argument("plan", type=Path, help="YAML plan file")
    parser.add_argument(
        "project_root",
        type=Path,
        nargs="?",
        default=Path.cwd(),
        help="Root of the project being migrated (default: current directory)",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Validate blocks without executing them"
    )
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Run remaining blocks after a failure",
    )
    parser.add_argument(
        "--ai-provider",
        type=AssistantKind,
        default=None,
        metavar="{" + ",".join(kind.value for kind in AssistantKind) + "}",
        help="Assistant CLI for AI blocks that do not set one (default: amazon-q)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for running a plan from the command line."""
    args = build_parser().parse_args(argv)
    configure_logging()

    defaults = {"assistant": args.ai_provider.value} if args.ai_provider else None
    load_result = load_plan_from_file(args.plan, defaults=defaults)
    if not load_result.is_success:
        logger.error(load_result.error)
        return 2

    plan = load_result.unwrap()
    context = ExecutionContext(args.project_root, dry_run=args.dry_run)
    runner = PlanRunner(stop_on_failure=not args.keep_going)

    try:
        result = asyncio.run(runner.run(plan, context))
    except KeyboardInterrupt:
        logger.info("Interrupted, child processes were terminated")
        return 130

    for run in result.runs:
        status = "OK" if run.outcome.success else "FAILED"
        logger.info(f"{status:6} {run.block_type:18} {run.block_name}: {run.outcome.message}")
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
