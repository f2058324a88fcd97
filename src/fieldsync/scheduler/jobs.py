"""
APScheduler jobs for background sync.

The interval sync is the background wake signal: it catches changes that
were queued while no connectivity event fired (e.g. a write made while the
remote store was down but the network was up). The probe job exists for
hosts that cannot push connectivity changes; the daily cleanup reaps
completed queue entries past the retention window.

The scheduler runs inside the same process as the service (wired in __main__).
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from fieldsync.config import get_settings
from fieldsync.sync.errors import CredentialUnavailableError

logger = logging.getLogger(__name__)


def build_scheduler(service) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        service: OfflineDataService whose engine the jobs drive.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _background_sync,
        trigger="interval",
        minutes=settings.sync_interval_minutes,
        id="background_sync",
        replace_existing=True,
        kwargs={"service": service},
    )

    if settings.connectivity_probe_url:
        scheduler.add_job(
            _connectivity_probe,
            trigger="interval",
            seconds=settings.connectivity_check_seconds,
            id="connectivity_probe",
            replace_existing=True,
            kwargs={"service": service},
        )

    scheduler.add_job(
        _queue_cleanup,
        trigger="cron",
        hour=settings.cleanup_hour,
        minute=0,
        id="queue_cleanup",
        replace_existing=True,
        kwargs={"service": service},
    )

    return scheduler


async def _background_sync(service) -> None:
    """Periodic wake-up: one sync pass if online. Skipped passes are not errors."""
    try:
        result = await service.engine.perform_sync()
        logger.info("Background sync: %s", result.message)
    except CredentialUnavailableError as exc:
        logger.warning("Background sync deferred: %s", exc)
    except Exception as exc:
        logger.error("Background sync failed: %s", exc)


async def _connectivity_probe(service) -> None:
    """Probe the remote; a transition to online triggers a sync via the monitor."""
    await service.monitor.check()


def _queue_cleanup(service) -> None:
    removed = service.cleanup()
    logger.info("Queue cleanup removed %d completed entries", removed)
