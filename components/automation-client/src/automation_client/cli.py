"""Command line entry point for rule automation runs.

Examples:
    automation-client rules
    automation-client run --name "January cleanup" --rules 21 30 \\
        --start 01/01/2025 --end 01/31/2025
    automation-client detail 10000004
    automation-client rollback 10000004 APT-501
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import anyio
from dotenv import find_dotenv, load_dotenv

from automation_client.api_client import AutomationApiClient
from automation_client.automation import AutomationRunner
from automation_client.config import AutomationConfig
from automation_client.dates import format_display_date
from automation_client.errors import AutomationError
from automation_client.models import (
    Batch,
    ExecutionOutcome,
    PatientRecord,
    ProgressSnapshot,
    ResultRecord,
    RuleSelection,
    RunSummary,
)
from automation_client.rollback import RollbackClient
from automation_client.runs import CatalogClient, RunsClient
from automation_client.submission import ProjectIdAllocator, ProjectIdStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="automation-client",
        description="Submit and manage rule automation runs.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run rules over a batch of encounters.")
    run.add_argument("--name", required=True, help="Run (project) name.")
    run.add_argument(
        "--rules", nargs="+", required=True, help="Rule numbers to run, e.g. 21 30."
    )
    run.add_argument(
        "--patients-file",
        type=Path,
        help="JSON file with a list of patient objects.",
    )
    run.add_argument("--start", help="Encounter range start (MM/DD/YYYY).")
    run.add_argument("--end", help="Encounter range end (MM/DD/YYYY).")
    run.add_argument("--project-id", help="Use this project id instead of allocating one.")

    commands.add_parser("runs", help="List past runs.")

    detail = commands.add_parser("detail", help="Show the results of a run.")
    detail.add_argument("project_id")

    archive = commands.add_parser("archive", help="Archive a run.")
    archive.add_argument("run_id")

    rollback = commands.add_parser(
        "rollback", help="Roll back (or re-apply) rules for one patient of a run."
    )
    rollback.add_argument("project_id")
    rollback.add_argument("appointment_id")
    rollback.add_argument(
        "--reapply",
        action="store_true",
        help="Re-apply the patient's rules instead of rolling them back.",
    )

    commands.add_parser("rules", help="List available rules.")

    patients = commands.add_parser("patients", help="List encounters in a date range.")
    patients.add_argument("--start", required=True, help="Start date (MM/DD/YYYY).")
    patients.add_argument("--end", required=True, help="End date (MM/DD/YYYY).")
    return parser


def configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _changed_count(records: Sequence[ResultRecord]) -> int:
    return sum(1 for record in records if record.has_changes)


def _outcome_to_dict(outcome: ExecutionOutcome) -> dict[str, Any]:
    return {
        "status": outcome.status.value,
        "reason": outcome.reason,
        "patients_with_changes": _changed_count(outcome.results),
        "results": [record.to_fragment() for record in outcome.results],
    }


def _run_to_dict(run: RunSummary) -> dict[str, Any]:
    return {**run.raw, "created": format_display_date(run.created_at)}


def _log_progress(snapshot: ProgressSnapshot) -> None:
    done = sum(1 for rule in snapshot.rules if rule.is_terminal)
    overall = snapshot.overall.percentage if snapshot.overall else 0.0
    logger.info(
        "Progress: %.0f%% overall, %d/%d rule(s) finished",
        overall,
        done,
        len(snapshot.rules),
    )


def _load_patients_file(path: Path) -> list[PatientRecord]:
    rows = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(rows, list):
        raise ValueError(f"{path} must contain a JSON list of patients")
    return [PatientRecord.from_mapping(row) for row in rows if isinstance(row, dict)]


async def _run(api: AutomationApiClient, args: argparse.Namespace) -> int:
    if args.patients_file:
        patients = _load_patients_file(args.patients_file)
    elif args.start and args.end:
        patients = await CatalogClient(api).list_patients(args.start, args.end)
    else:
        raise ValueError("either --patients-file or --start and --end is required")

    store = ProjectIdStore(api.config.cache_dir)
    try:
        runner = AutomationRunner(api, allocator=ProjectIdAllocator(api, store))
        outcome = await runner.run(
            Batch(
                name=args.name,
                patients=patients,
                rules=[RuleSelection(rule_number=rule) for rule in args.rules],
                project_id=args.project_id,
                add_modifiers=api.config.add_modifiers.default,
            ),
            on_update=_log_progress,
        )
    finally:
        store.close()
    _emit(_outcome_to_dict(outcome))
    return 0 if outcome.succeeded else 1


async def _rollback(api: AutomationApiClient, args: argparse.Namespace) -> int:
    detail = await RunsClient(api).get_run_detail(args.project_id)
    record = detail.find(args.appointment_id)
    if record is None:
        raise ValueError(
            f"appointment {args.appointment_id} not found in run {args.project_id}"
        )
    client = RollbackClient(api)
    if args.reapply:
        handle = await client.reapply(record, detail.project_name or None)
        _emit({"execution_id": handle.execution_id})
    else:
        _emit((await client.rollback(record)).to_fragment())
    return 0


async def dispatch(api: AutomationApiClient, args: argparse.Namespace) -> int:
    """Execute the parsed subcommand against ``api``."""
    if args.command == "run":
        return await _run(api, args)
    if args.command == "runs":
        _emit([_run_to_dict(run) for run in await RunsClient(api).list_runs()])
    elif args.command == "detail":
        detail = await RunsClient(api).get_run_detail(args.project_id)
        _emit(
            {
                "project_id": detail.project_id,
                "project_name": detail.project_name,
                "patients_with_changes": _changed_count(detail.results),
                "results": [record.to_fragment() for record in detail.results],
            }
        )
    elif args.command == "archive":
        _emit({"message": await RunsClient(api).archive_run(args.run_id)})
    elif args.command == "rollback":
        return await _rollback(api, args)
    elif args.command == "rules":
        rules = await CatalogClient(api).list_rules()
        _emit([{"rule_number": rule.rule_number, "name": rule.name} for rule in rules])
    elif args.command == "patients":
        patients = await CatalogClient(api).list_patients(args.start, args.end)
        _emit([patient.to_payload() for patient in patients])
    return 0


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Async CLI entrypoint."""
    args = build_parser().parse_args(argv)
    # .env may set LOG_LEVEL, so load it before logging is configured
    load_dotenv(find_dotenv(usecwd=True))
    configure_logging(args.verbose)

    try:
        config = AutomationConfig.from_env()
        async with AutomationApiClient(config) as api:
            return await dispatch(api, args)
    except (AutomationError, ValueError) as exc:
        logger.error("%s", exc)
        return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Sync CLI entrypoint."""
    return anyio.run(main_async, argv)


if __name__ == "__main__":
    sys.exit(main())
