"""Ockham CLI.

Usage:
    ockham fingerprint --input FILE
    ockham calculate --input FILE [--seed N]
    ockham cleanup [--dry-run]
    ockham worker [--once] [--poll-interval SECONDS]

``--input -`` reads the calculation input JSON from stdin. All commands
print JSON to stdout; logs go to stderr.

Exit codes:
    0: Success
    1: Internal error
    2: Invalid input
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from pydantic import ValidationError

from ockham.app import build_engine, build_services
from ockham.config import LOG_LEVEL_ENV, CalculationSettings
from ockham.hashing import FingerprintGenerator
from ockham.models import CalculationInput
from ockham.observability import configure_tracing

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class InputError(Exception):
    """Raised when the calculation input file cannot be used."""

    pass


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2, default=str))


def _load_input(path: str) -> CalculationInput:
    try:
        if path == "-":
            content = sys.stdin.read()
        else:
            with open(path, encoding="utf-8") as f:
                content = f.read()
    except OSError as e:
        raise InputError(f"Cannot read input: {e}") from e

    if not content.strip():
        raise InputError("Empty input")
    try:
        return CalculationInput.model_validate_json(content)
    except ValidationError as e:
        raise InputError(f"Invalid calculation input: {e}") from e


def cmd_fingerprint(args: argparse.Namespace) -> int:
    calc_input = _load_input(args.input)
    generator = FingerprintGenerator()
    fingerprint = generator.generate(calc_input)
    _output_json(
        {
            "case_id": calc_input.case_id,
            "fingerprint": fingerprint,
            "short": generator.short_form(fingerprint),
        }
    )
    return 0


def cmd_calculate(args: argparse.Namespace) -> int:
    """Run the pipeline in-process and print the full result."""
    calc_input = _load_input(args.input)
    engine = build_engine(CalculationSettings.from_env(), seed=args.seed)
    result = engine.run(calc_input)
    _output_json(result.model_dump(mode="json"))
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    services = build_services()
    count = services.binding.cleanup_expired(dry_run=args.dry_run)
    _output_json({"deleted": 0 if args.dry_run else count, "due": count, "dry_run": args.dry_run})
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    services = build_services()
    worker = services.create_worker(poll_interval=args.poll_interval)

    if args.once:
        handled = asyncio.run(worker.run_until_idle())
        _output_json({"handled": handled, "failed": worker.failed})
        return 0

    async def _serve() -> None:
        await worker.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await worker.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    _output_json({"handled": worker.processed, "failed": worker.failed})
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ockham",
        description="Project economics calculation engine",
    )
    subparsers = parser.add_subparsers(dest="command")

    fingerprint_parser = subparsers.add_parser(
        "fingerprint", help="Print the fingerprint of a calculation input"
    )
    fingerprint_parser.add_argument("--input", required=True, help="Input JSON file, or -")

    calculate_parser = subparsers.add_parser(
        "calculate", help="Run a calculation in-process and print the result"
    )
    calculate_parser.add_argument("--input", required=True, help="Input JSON file, or -")
    calculate_parser.add_argument(
        "--seed", type=int, default=None, help="Seed for Monte Carlo noise"
    )

    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Delete calculations whose grace period has expired"
    )
    cleanup_parser.add_argument(
        "--dry-run", action="store_true", help="Count due calculations without deleting"
    )

    worker_parser = subparsers.add_parser("worker", help="Process queued calculations")
    worker_parser.add_argument(
        "--once", action="store_true", help="Process until the queue is empty, then exit"
    )
    worker_parser.add_argument(
        "--poll-interval", type=float, default=1.0, help="Seconds to wait for work"
    )

    return parser


COMMANDS = {
    "fingerprint": cmd_fingerprint,
    "calculate": cmd_calculate,
    "cleanup": cmd_cleanup,
    "worker": cmd_worker,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=os.environ.get(LOG_LEVEL_ENV, "INFO").upper(),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    configure_tracing()

    try:
        return COMMANDS[args.command](args)
    except InputError as e:
        _output_json({"error": "INVALID_INPUT", "message": str(e)})
        return 2
    except Exception as e:
        logger.exception("Command %s failed", args.command)
        _output_json({"error": "INTERNAL_ERROR", "message": str(e)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
