#!/usr/bin/env python3
"""Command-line interface for the event import pipeline.

Commands:
  - eventimport worker          : Process queued pipeline tasks
  - eventimport import          : Register an import source and create its jobs
  - eventimport approve         : Approve the pending schema change of a job
  - eventimport recover         : Recover a failed job into a recovery stage
  - eventimport maintenance     : Run maintenance tasks now
  - eventimport test-geocoding  : Geocode a test address with every enabled provider

Typical usage:
  eventimport worker --until-idle
  eventimport approve 3f2a... --actor alice --role editor
  eventimport recover 3f2a... --to-stage geocode-batch --actor alice
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from eventimport.errors import EventImportError
from eventimport.ingestion.policies import Actor, approval_policy, recovery_policy, require
from eventimport.ingestion.retry import RECOVERY_STAGES
from eventimport.ingestion.stages import MAINTENANCE_TASKS, TASK_REGISTRY
from eventimport.ingestion.worker import PipelineWorker, build_context
from eventimport.monitoring.logging import LoggingOptions, setup_logging
from eventimport.schemas.dataset import ImportSource
from eventimport.schemas.import_job import ProcessingStage


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="eventimport", description="Event import pipeline CLI")
    p.add_argument("--version", action="store_true", help="Print version and exit")
    p.add_argument("--json-logs", action="store_true", help="Emit JSON logs")
    p.add_argument("--log-level", default="INFO", help="Log level")
    sub = p.add_subparsers(dest="cmd")

    # worker
    pw = sub.add_parser("worker", help="Process queued tasks")
    pw.add_argument("--until-idle", action="store_true", help="Exit once the queue is empty")
    pw.add_argument("--max-tasks", type=int, default=None, help="Stop after this many tasks")
    pw.add_argument("--poll-interval", type=float, default=1.0, help="Seconds between polls when idle")

    # import
    pi = sub.add_parser("import", help="Register an import source and create one job per sheet")
    pi.add_argument("location", help="File path (relative to UPLOAD_DIR) or URL")
    pi.add_argument("--dataset", "-d", required=True, help="Target dataset id")
    pi.add_argument("--file-type", default="csv", choices=["csv", "xlsx", "xls"], help="Source file type")
    pi.add_argument("--sheets", type=int, nargs="*", default=[0], help="Sheet indexes to import")

    # approve
    pa = sub.add_parser("approve", help="Approve a pending schema change")
    pa.add_argument("job_id", help="Import job id")
    pa.add_argument("--actor", required=True, help="User id of the approver")
    pa.add_argument("--role", default="editor", help="Role of the approver")

    # recover
    prc = sub.add_parser("recover", help="Recover a failed job")
    prc.add_argument("job_id", help="Import job id")
    prc.add_argument(
        "--to-stage",
        required=True,
        choices=sorted(s.value for s in RECOVERY_STAGES),
        help="Stage to resume from",
    )
    prc.add_argument("--actor", required=True, help="User id issuing the recovery")
    prc.add_argument("--role", default="editor", help="Role of the user")
    prc.add_argument("--reason", default=None, help="Reason recorded in the audit log")

    # maintenance
    pm = sub.add_parser("maintenance", help="Run maintenance tasks")
    pm.add_argument("--task", "-t", nargs="*", choices=MAINTENANCE_TASKS, default=None, help="Tasks to run (default: all)")

    # test-geocoding
    pg = sub.add_parser("test-geocoding", help="Test every enabled geocoding provider")
    pg.add_argument("--address", "-a", default=None, help="Address to geocode")

    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the CLI with the given arguments."""
    try:
        return _main_impl(argv)
    except EventImportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _main_impl(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    if args.version:
        from eventimport import __version__

        print(f"eventimport version {__version__}")
        return 0

    if not args.cmd:
        print("Error: Command required. Use --help for usage info.", file=sys.stderr)
        return 1

    setup_logging(LoggingOptions(level=args.log_level, json_logs=bool(args.json_logs)))
    ctx = build_context()

    if args.cmd == "worker":
        worker = PipelineWorker(ctx)
        if args.until_idle or args.max_tasks:
            processed = asyncio.run(worker.run_until_idle(args.max_tasks))
            print(f"Processed {processed} task(s)")
            return 0
        asyncio.run(worker.run_forever(poll_interval_s=args.poll_interval))
        return 0

    if args.cmd == "import":
        source = ImportSource(dataset=args.dataset, location=args.location, file_type=args.file_type, sheets=args.sheets)
        jobs = PipelineWorker(ctx).start_import(source)
        print(f"Import source: {source.id}")
        for job in jobs:
            print(f"  sheet {job.sheet_index}: job {job.id} ({job.progress.total_rows} rows)")
        return 0

    if args.cmd == "approve":
        actor = Actor(id=args.actor, role=args.role)
        job = ctx.engine.get_job(args.job_id)
        require(approval_policy(actor, job), "approve", actor)
        job = ctx.engine.approve(job.id, approved_by=actor.id)
        print(f"Job {job.id} approved; stage {job.stage.value}")
        return 0

    if args.cmd == "recover":
        actor = Actor(id=args.actor, role=args.role)
        job = ctx.engine.get_job(args.job_id)
        require(recovery_policy(actor, job), "recover", actor)
        job = ctx.engine.recover(job.id, ProcessingStage(args.to_stage), actor=actor.id, reason=args.reason)
        print(f"Job {job.id} recovered into {job.stage.value}")
        return 0

    if args.cmd == "maintenance":
        report = {name: TASK_REGISTRY[name](ctx, {}) for name in (args.task or MAINTENANCE_TASKS)}
        print(json.dumps(report, indent=2))
        return 0

    if args.cmd == "test-geocoding":
        if ctx.geocoder is None:
            print("Error: Geocoding is not configured.", file=sys.stderr)
            return 1
        report = asyncio.run(ctx.geocoder.test_providers(args.address))
        print(json.dumps(report, indent=2, ensure_ascii=False, default=str))
        return 0 if any(r.get("success") for r in report.values()) else 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
