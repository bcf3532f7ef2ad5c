#!/usr/bin/env python3
"""Re-apply winner propagation for decided matches.

A winner is recorded before it is copied into the next match. If the second
write fails the bracket keeps a decided match whose winner never advanced. This
utility finds such matches and fills the downstream slot. By default it performs
no writes (dry-run). Pass ``--execute`` once you are satisfied with the planned
changes.
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - simple environment setup
    sys.path.insert(0, str(ROOT_DIR))

from bracket_bot.bracket import RepairReport, repair_propagation
from bracket_bot.storage import TournamentStorage

log = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--table",
        help="DynamoDB table name that stores tournament data",
    )
    parser.add_argument(
        "--tournament",
        default="default",
        help="Tournament id to process (default: default)",
    )
    parser.add_argument(
        "--profile",
        help="Optional AWS profile to use",
    )
    parser.add_argument(
        "--region",
        help="AWS region (defaults to boto3's resolution order)",
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Apply fixes instead of printing the planned changes",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO), format="%(message)s"
    )


def report_plan(report: RepairReport, *, dry_run: bool) -> None:
    for fix in report.fixes:
        displaced = f" (displacing {fix.replaces})" if fix.replaces is not None else ""
        log.info(
            "%s: advance entrant %s from %s into %s slot %s%s",
            "Would" if dry_run else "Applied",
            fix.entrant_id,
            fix.source.label,
            fix.target.label,
            fix.slot.value,
            displaced,
        )
    for fix in report.conflicts:
        log.warning(
            "Conflict: %s slot %s holds %s but %s was won by %s",
            fix.target.label,
            fix.slot.value,
            fix.target.slot(fix.slot),
            fix.source.label,
            fix.entrant_id,
        )
    for match in report.missing_targets:
        log.warning("No downstream match exists for %s", match.label)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    dry_run = not args.execute

    if not args.table:
        raise SystemExit("No DynamoDB table specified; pass --table")

    session_kwargs: dict[str, Any] = {}
    if args.profile:
        session_kwargs["profile_name"] = args.profile
    if args.region:
        session_kwargs["region_name"] = args.region
    session = boto3.Session(**session_kwargs)
    table = session.resource("dynamodb").Table(args.table)
    storage = TournamentStorage(table, args.tournament)

    try:
        report = repair_propagation(storage, execute=not dry_run)
    except (ClientError, BotoCoreError) as exc:  # pragma: no cover - network failure
        log.error("AWS request failed: %s", exc)
        raise SystemExit(2) from exc

    report_plan(report, dry_run=dry_run)
    log.info(
        "%s complete. Fixes: %s, conflicts: %s",
        "Dry-run" if dry_run else "Execution",
        len(report.fixes),
        len(report.conflicts),
    )
    if report.conflicts:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
