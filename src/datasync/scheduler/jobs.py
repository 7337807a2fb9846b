"""
APScheduler jobs for background sync.

Nightly sync runs every catalog job in turn; a failing job is logged and
the next one still runs. With a verifier, an interval job runs a
count_only integrity check and logs the score.

The scheduler runs inside the same process as the CLI (wired in __main__.py).
"""
import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from datasync.config import get_settings
from datasync.sync.config import SyncConfig

logger = logging.getLogger(__name__)


def build_scheduler(sync_engine, configs: Mapping[str, SyncConfig], verifier=None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        sync_engine: SyncEngine that runs the jobs.
        configs: Job name -> SyncConfig, run in order every night.
        verifier: IntegrityVerifier for the periodic check (optional).

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.nightly_sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"sync_engine": sync_engine, "configs": configs},
    )

    if verifier is not None:
        scheduler.add_job(
            _integrity_check,
            trigger="interval",
            minutes=settings.integrity_check_minutes,
            id="integrity_check",
            replace_existing=True,
            kwargs={"verifier": verifier},
        )

    return scheduler


async def _nightly_sync(sync_engine, configs: Mapping[str, SyncConfig]) -> None:
    """
    Nightly job: run every configured sync.

    Idempotent: records already in the target come back as existing.
    """
    logger.info("Nightly sync starting at %s", datetime.now(timezone.utc).isoformat())

    for name, config in configs.items():
        try:
            result = await sync_engine.execute_sync(config)
            logger.info("Nightly %s: %s %s", name, result.status, result.stats)
        except Exception as exc:
            logger.error("Nightly %s failed: %s", name, exc)


async def _integrity_check(verifier, mode: str = "count_only") -> Optional[float]:
    """Periodic integrity check; returns the score, or None if it failed."""
    try:
        report = await verifier.verify_data_integrity(mode)
    except Exception as exc:
        logger.error("Integrity check failed: %s", exc)
        return None

    if report.verification_summary["overall_status"] in ("concerning", "critical"):
        logger.warning(
            "Integrity check: score %.2f (%s)",
            report.integrity_score,
            report.verification_summary["overall_status"],
        )
    else:
        logger.info("Integrity check: score %.2f", report.integrity_score)
    return report.integrity_score
