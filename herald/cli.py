"""Operator command line.

Usage:
  herald run --kind all --limit 30
  herald deadletters list --kind email --limit 50
  herald deadletters retry email job_123 --actor alice
  herald deadletters suppress event evt_abc --actor alice --reason "known issue"
  herald status

Every command prints a JSON document on stdout.
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any

from herald.config import Pipeline, Settings, build_pipeline
from herald.core.errors import HeraldError
from herald.core.logging import configure_logging
from herald.core.models import DeadLetterKind
from herald.pipeline.runner import RunKind

KINDS = [kind.value for kind in DeadLetterKind]

# Commands that only read state written by earlier processes.
STATEFUL_COMMANDS = ("status", "deadletters")

logger = logging.getLogger("herald.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="herald", description="Notification pipeline operations")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run pipeline phases on demand")
    run.add_argument("--kind", choices=[kind.value for kind in RunKind], default=RunKind.ALL.value)
    run.add_argument("--limit", type=int, default=30)

    deadletters = commands.add_parser("deadletters", help="Inspect and act on dead letters")
    actions = deadletters.add_subparsers(dest="action", required=True)

    list_cmd = actions.add_parser("list", help="List dead letters, newest first")
    list_cmd.add_argument("--kind", choices=KINDS, default=DeadLetterKind.EVENT.value)
    list_cmd.add_argument("--limit", type=int, default=100)
    list_cmd.add_argument("--include-suppressed", action="store_true")

    retry = actions.add_parser("retry", help="Requeue the record behind a dead letter")
    retry.add_argument("kind", choices=KINDS)
    retry.add_argument("id")
    retry.add_argument("--actor", required=True)

    suppress = actions.add_parser("suppress", help="Hide a dead letter from the default listing")
    suppress.add_argument("kind", choices=KINDS)
    suppress.add_argument("id")
    suppress.add_argument("--actor", required=True)
    suppress.add_argument("--reason")

    commands.add_parser("status", help="Show the last run of each pipeline")
    return parser


async def execute(args: argparse.Namespace, pipeline: Pipeline) -> dict[str, Any]:
    if args.command == "run":
        report = await pipeline.runner.run(args.kind, args.limit)
        return report.to_dict()

    if args.command == "status":
        statuses = await pipeline.status.all()
        return {
            name: status.to_document() if status else None for name, status in statuses.items()
        }

    recorder = pipeline.deadletters
    if args.action == "list":
        letters = await recorder.list(args.kind, args.limit, args.include_suppressed)
        return {"kind": args.kind, "items": [letter.to_document() for letter in letters]}
    if args.action == "retry":
        result = await recorder.retry(args.kind, args.id, args.actor)
        return {
            "ok": True,
            "kind": result.kind.value,
            "id": result.id,
            "manual_retry_count": result.manual_retry_count,
        }
    letter = await recorder.suppress(args.kind, args.id, args.actor, args.reason)
    return {"ok": True, "kind": letter.kind.value, "id": letter.id}


async def _main(args: argparse.Namespace, settings: Settings) -> int:
    if settings.store_backend == "memory" and args.command in STATEFUL_COMMANDS:
        logger.warning(
            "the memory store starts empty in every process; %s will not see earlier runs. "
            "Set HERALD_STORE_BACKEND=redis to inspect a shared store.",
            args.command,
        )
    pipeline = build_pipeline(settings)
    try:
        output = await execute(args, pipeline)
    except HeraldError as e:
        print(json.dumps({"ok": False, "error": f"{type(e).__name__}: {e}"}))
        return 1
    finally:
        await pipeline.aclose()
    print(json.dumps(output, indent=2, default=str))
    return 0 if output.get("ok", True) else 1


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings()
    configure_logging(settings.log_level, json_format=settings.log_format == "json")
    return asyncio.run(_main(args, settings))


if __name__ == "__main__":
    sys.exit(main())
