"""
Main entrypoint.

Usage:
    python -m datasync                          # starts the scheduler
    python -m datasync sync import_cases        # runs one catalog job
    python -m datasync sync import_cases --dry-run --limit 50
    python -m datasync verify full --reconcile  # verification (+ repair)
    python -m datasync sessions --status failed # recent sync sessions
"""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from datasync.config import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="datasync", description="Source -> target data sync")
    sub = parser.add_subparsers(dest="command")

    sync = sub.add_parser("sync", help="Run one sync job")
    sync.add_argument("job", help="Catalog job name, e.g. import_cases")
    sync.add_argument("--dry-run", action="store_true", help="Validate config only")
    sync.add_argument("--limit", type=int, default=None, help="Stop after this many records")
    sync.add_argument("--batch-size", type=int, default=None)

    verify = sub.add_parser("verify", help="Verify source/target integrity")
    verify.add_argument("mode", nargs="?", default="count_only", choices=["count_only", "sample", "full"])
    verify.add_argument("--resource", action="append", dest="resource_types", help="Limit to a resource type")
    verify.add_argument("--sample-size", type=int, default=100)
    verify.add_argument("--reconcile", action="store_true", help="Repair what verification finds")

    sessions = sub.add_parser("sessions", help="List recent sync sessions")
    sessions.add_argument("--status", default=None)
    sessions.add_argument("--limit", type=int, default=20)
    return parser


async def _run_sync(job: str, dry_run: bool, limit: Optional[int], batch_size: Optional[int]) -> int:
    from datasync.catalog import build_runtime, sync_configs
    from datasync.db.engine import get_engine

    configs = sync_configs(batch_size)
    if job not in configs:
        logger.error("Unknown job %r. Available: %s", job, ", ".join(configs))
        return 2

    config = configs[job]
    if limit is not None:
        config = config.model_copy(
            update={"processing_config": config.processing_config.model_copy(update={"limit": limit})}
        )

    runtime = build_runtime(get_engine())
    try:
        result = await runtime.sync_engine.execute_sync(config, dry_run=dry_run)
    except Exception as exc:
        logger.error("Sync %s failed: %s", job, exc)
        return 1
    logger.info("Sync %s: %s %s (session %s)", job, result.status, result.stats, result.session_id)
    return 0


async def _run_verify(mode: str, resource_types: Optional[List[str]], sample_size: int, reconcile: bool) -> int:
    from datasync.catalog import build_runtime
    from datasync.db.engine import get_engine

    runtime = build_runtime(get_engine())
    options = {"sample_size": sample_size}
    if resource_types:
        options["resource_types"] = resource_types
    try:
        report = await runtime.verifier.verify_data_integrity(mode, options)
    except Exception as exc:
        logger.error("Verification failed: %s", exc)
        return 1

    summary = report.verification_summary
    logger.info("Integrity score %.2f (%s)", report.integrity_score, summary["overall_status"])
    for line in report.recommendations:
        logger.info("  - %s", line)

    if reconcile:
        outcome = await runtime.verifier.reconcile_integrity_issues(report)
        logger.info(
            "Reconciled %d/%d issues (%.0f%%)",
            outcome.resolved_issues,
            outcome.total_issues,
            outcome.resolution_rate * 100,
        )
    return 0


def _list_sessions(status: Optional[str], limit: int) -> int:
    from datasync.db.engine import get_engine
    from datasync.sync.session_tracker import SessionTracker

    for row in SessionTracker(get_engine()).list_sessions(status=status, limit=limit):
        print(
            f"{row.session_id}  {row.status:<10} {row.source_adapter}->{row.target_resource}  "
            f"processed={row.processed} errors={row.error_count}"
        )
    return 0


async def _run_scheduler() -> None:
    from datasync.catalog import build_runtime, sync_configs
    from datasync.db.engine import get_engine
    from datasync.scheduler.jobs import build_scheduler

    settings = get_settings()
    runtime = build_runtime(get_engine())

    scheduler = build_scheduler(runtime.sync_engine, sync_configs(), runtime.verifier)
    scheduler.start()
    logger.info(
        "Scheduler started (nightly sync at %02d:00 UTC, integrity check every %d min)",
        settings.nightly_sync_hour,
        settings.integrity_check_minutes,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    if args.command == "sync":
        return asyncio.run(_run_sync(args.job, args.dry_run, args.limit, args.batch_size))
    if args.command == "verify":
        return asyncio.run(_run_verify(args.mode, args.resource_types, args.sample_size, args.reconcile))
    if args.command == "sessions":
        return _list_sessions(args.status, args.limit)
    asyncio.run(_run_scheduler())
    return 0


if __name__ == "__main__":
    sys.exit(main())
