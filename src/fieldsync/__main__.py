"""
Main entrypoint.

Usage:
    python -m fieldsync             # starts the background scheduler (periodic sync, probe, cleanup)
    python -m fieldsync sync        # runs one sync pass and exits
    python -m fieldsync status      # prints queue/connectivity status as JSON
    python -m fieldsync cleanup     # reaps completed queue entries past retention
    uvicorn fieldsync.api.main:create_app --factory --port 8000  # starts the API
"""
import argparse
import asyncio
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_sync() -> int:
    from fieldsync.service import build_service
    from fieldsync.sync.errors import SyncError

    service = build_service()
    await service.init()
    try:
        result = await service.force_sync()
    except SyncError as exc:
        logger.error("Sync did not run: %s", exc)
        return 1
    finally:
        await service.engine.remote.close()
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


async def _run_status() -> int:
    from fieldsync.service import build_service

    service = build_service()
    print(json.dumps(service.engine.get_sync_stats(), indent=2))
    return 0


def _run_cleanup() -> int:
    from fieldsync.service import build_service

    removed = build_service().cleanup()
    logger.info("Removed %d completed queue entries", removed)
    return 0


async def _run_worker() -> None:
    from fieldsync.config import get_settings
    from fieldsync.scheduler.jobs import build_scheduler
    from fieldsync.service import build_service

    settings = get_settings()
    if not settings.remote_base_url:
        logger.error("FIELDSYNC_REMOTE_BASE_URL is not set; nothing to sync against.")
        sys.exit(1)

    service = build_service(settings)
    await service.init()

    scheduler = build_scheduler(service)
    scheduler.start()
    logger.info(
        "Scheduler started (sync every %d min, cleanup at %02d:00)",
        settings.sync_interval_minutes,
        settings.cleanup_hour,
    )

    try:
        await service.engine.perform_sync()
    except Exception as exc:
        logger.warning("Startup sync did not complete: %s", exc)

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await service.wait_for_background()
        await service.engine.remote.close()
        logger.info("Goodbye.")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="fieldsync", description="Offline-first sync worker")
    parser.add_argument(
        "command", nargs="?", default="run",
        choices=["run", "sync", "status", "cleanup"],
    )
    args = parser.parse_args(argv)

    if args.command == "sync":
        return asyncio.run(_run_sync())
    if args.command == "status":
        return asyncio.run(_run_status())
    if args.command == "cleanup":
        return _run_cleanup()
    asyncio.run(_run_worker())
    return 0


if __name__ == "__main__":
    sys.exit(main())
