"""
SyncEngine: two-phase reconciliation between the local store and the remote store.

Flow for one pass (perform_sync):
  1. Guards: return at once if a pass is already running or the device is offline
  2. Acquire an access token (provider, then cache); none at all aborts the pass
  3. Download: fetch every entity kind's full collection and write each row
     into the local store as a server write (no queue entries)
  4. Upload: drain pending queue entries in enqueue order, one request each
  5. Back to idle; the final status is broadcast either way

Download failures are isolated per entity kind and upload failures per queue
entry: both are logged and recorded, never raised. Only missing credentials
(CredentialUnavailableError) and local storage errors leave perform_sync().

Conflict policy is last-writer-wins: there are no version stamps, so a remote
change made between a local edit and its upload is overwritten by the upload.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from sqlmodel import Session

from fieldsync.config import EntityKind
from fieldsync.models.mutation import Mutation, MutationAction, MutationStatus
from fieldsync.models.sync import SyncLog
from fieldsync.remote.exceptions import RemoteStoreError
from fieldsync.remote.normalizer import clean_for_upload, split_server_row
from fieldsync.sync.errors import CredentialUnavailableError
from fieldsync.sync.retry import RetryPolicy
from fieldsync.sync.status import StatusBroadcaster, SyncStatus

logger = logging.getLogger(__name__)


class SyncEngineState(str, Enum):
    IDLE = "IDLE"
    SYNCING = "SYNCING"


@dataclass
class SyncResult:
    success: bool
    message: str
    downloaded: int = 0
    uploaded: int = 0
    failed: int = 0
    deferred: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "downloaded": self.downloaded,
            "uploaded": self.uploaded,
            "failed": self.failed,
            "deferred": self.deferred,
        }


class SyncEngine:
    """
    Orchestrates download-then-upload sync passes and publishes status.

    Args:
        store: LocalStore.
        remote: RemoteStoreClient (or a fake with the same coroutines).
        tokens: TokenManager.
        monitor: NetworkMonitor.
        kinds: Entity kinds to download and upload.
        broadcaster: StatusBroadcaster; one is created if omitted.
        retry_policy: Backoff hook for previously failed entries.
    """

    def __init__(
        self,
        store,
        remote,
        tokens,
        monitor,
        *,
        kinds: Iterable[EntityKind],
        broadcaster: Optional[StatusBroadcaster] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.remote = remote
        self.tokens = tokens
        self.monitor = monitor
        self.kinds: Dict[str, EntityKind] = {k.name: k for k in kinds}
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.retry_policy = retry_policy or RetryPolicy(max_retries=store.max_retries)

        self.state = SyncEngineState.IDLE
        self.last_sync_attempt: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None
        self._initialized = False

    # ─── Lifecycle / status ──────────────────────────────────────────────────

    async def init(self) -> None:
        """Subscribe to connectivity changes and publish the initial status. Idempotent."""
        if self._initialized:
            return
        self.monitor.on_change(self._on_connectivity_change)
        self._initialized = True
        await self.publish_status()

    @property
    def is_syncing(self) -> bool:
        return self.state is SyncEngineState.SYNCING

    def current_status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.monitor.is_online,
            is_syncing=self.is_syncing,
            pending_count=self.store.pending_count(),
        )

    async def publish_status(self) -> SyncStatus:
        status = self.current_status()
        await self.broadcaster.publish(status)
        return status

    def add_listener(self, listener) -> None:
        self.broadcaster.add_listener(listener)

    def remove_listener(self, listener) -> None:
        self.broadcaster.remove_listener(listener)

    async def _on_connectivity_change(self, online: bool) -> None:
        await self.publish_status()
        if not online:
            return
        try:
            result = await self.perform_sync()
            logger.info("Reconnect sync: %s", result.message)
        except CredentialUnavailableError as exc:
            logger.warning("Reconnect sync deferred: %s", exc)

    # ─── Sync pass ───────────────────────────────────────────────────────────

    async def perform_sync(self) -> SyncResult:
        """
        Run one download-then-upload pass.

        Returns:
            SyncResult; `success` is False only when the pass was skipped.

        Raises:
            CredentialUnavailableError: no usable token anywhere. The queue is untouched.
        """
        # The state check and flip happen before any await, so at most one pass runs
        if self.is_syncing:
            logger.info("Sync already in progress")
            return SyncResult(success=False, message="Sync already in progress")
        if not self.monitor.is_online:
            logger.info("Device is offline, skipping sync")
            return SyncResult(success=False, message="Device is offline")

        self.state = SyncEngineState.SYNCING
        self.last_sync_attempt = datetime.now(timezone.utc)
        log = None
        try:
            await self.publish_status()
            log = self._create_sync_log()

            token = await self.tokens.get_token()
            if not token:
                raise CredentialUnavailableError("Unable to acquire an access token for sync")

            logger.info("Step 1: downloading latest data")
            downloaded = await self.download_latest_data(token)
            logger.info("Step 2: uploading pending changes")
            uploaded, failed, deferred = await self.upload_pending_changes(token)

            if failed:
                message = f"Sync completed with {failed} failed change(s)"
            else:
                message = "Sync completed successfully"
            result = SyncResult(
                success=True, message=message,
                downloaded=downloaded, uploaded=uploaded, failed=failed, deferred=deferred,
            )
            self._finish_sync_log(log, result=result)
            self.last_result = result
            logger.info("%s (down=%d up=%d failed=%d deferred=%d)",
                        message, downloaded, uploaded, failed, deferred)
            return result

        except Exception as exc:
            if log is not None:
                self._finish_sync_log(log, error_message=str(exc))
            self.last_result = SyncResult(success=False, message=f"Sync failed: {exc}")
            raise

        finally:
            self.state = SyncEngineState.IDLE
            await self.publish_status()

    async def download_latest_data(self, token: Optional[str] = None) -> int:
        """
        Pull every entity kind's remote collection into the local store.

        Rows are written as server writes, so nothing is enqueued. Local records
        with unsent changes, and records deleted locally whose DELETE has not
        been sent yet, are left alone; their pending upload wins.

        Returns:
            Number of records written.
        """
        if token is None:
            token = await self.tokens.get_token()
            if not token:
                raise CredentialUnavailableError("Unable to acquire an access token for download")

        written = 0
        for kind in self.kinds.values():
            try:
                rows = await self.remote.list_records(kind, token)
            except RemoteStoreError as exc:
                logger.warning("Download of %s failed: %s", kind.name, exc)
                continue

            kept_local = 0
            for row in rows:
                parsed = split_server_row(row, kind.id_field)
                if parsed is None:
                    continue
                record_id, attributes = parsed
                existing = self.store.get(kind.name, record_id)
                if existing is not None and existing.needs_sync:
                    kept_local += 1
                    continue
                if existing is None and self.store.has_pending_delete(kind.name, record_id):
                    kept_local += 1
                    continue
                self.store.put(kind.name, attributes, record_id=record_id, is_from_server=True)
                written += 1

            logger.info("Downloaded %d %s (%d kept with local changes)", len(rows), kind.name, kept_local)
        return written

    async def upload_pending_changes(self, token: str):
        """
        Drain the pending queue in enqueue order.

        Each entry is isolated: a failure is recorded on that entry and the
        loop moves on.

        Returns:
            (uploaded, failed, deferred) counts.
        """
        entries = self.store.get_pending_mutations()
        logger.info("Uploading %d pending changes", len(entries))

        uploaded = failed = deferred = 0
        for listed in entries:
            # Re-read: a local write during an earlier await may have changed or cancelled it
            entry = self.store.get_mutation(listed.id)
            if entry is None or entry.status != MutationStatus.PENDING.value:
                continue
            if not self.retry_policy.is_due(entry, self.store.now()):
                deferred += 1
                continue

            try:
                server_id = await self.process_mutation(entry, token)
            except Exception as exc:  # remote failures are isolated per entry
                logger.warning("Error processing %s %s/%s (#%s): %s",
                               entry.action, entry.entity_type, entry.entity_id, entry.id, exc)
                self.store.mark_mutation_failed(entry.id, exc, revision=entry.revision)
                failed += 1
                continue

            if entry.action == MutationAction.CREATE.value:
                self.store.complete_create(entry, server_id)
            else:
                self.store.mark_mutation_completed(entry.id, revision=entry.revision)
            uploaded += 1

        return uploaded, failed, deferred

    async def process_mutation(self, entry: Mutation, token: str) -> Optional[str]:
        """
        Send one queue entry to the remote store.

        Returns:
            The server-issued id for a CREATE, otherwise None.
        """
        kind = self.kinds.get(entry.entity_type)
        if kind is None:
            raise ValueError(f"Unknown entity kind {entry.entity_type!r}")

        if entry.action == MutationAction.CREATE.value:
            body = clean_for_upload(entry.payload or {}, id_field=kind.id_field)
            return await self.remote.create_record(kind, body, token)
        if entry.action == MutationAction.UPDATE.value:
            body = clean_for_upload(entry.payload or {}, id_field=kind.id_field)
            await self.remote.update_record(kind, entry.entity_id, body, token)
            return None
        if entry.action == MutationAction.DELETE.value:
            await self.remote.delete_record(kind, entry.entity_id, token)
            return None
        raise ValueError(f"Unknown mutation action {entry.action!r}")

    # ─── Reporting ───────────────────────────────────────────────────────────

    def get_sync_stats(self) -> Dict[str, Any]:
        """Status plus a summary of what is still queued."""
        pending = self.store.get_pending_mutations()
        failed = self.store.get_mutations(MutationStatus.FAILED)
        return {
            **self.current_status().to_dict(),
            "lastSyncAttempt": self.last_sync_attempt.isoformat() if self.last_sync_attempt else None,
            "failedCount": len(failed),
            "pendingItems": [
                {
                    "type": item.kind,
                    "entityType": item.entity_type,
                    "action": item.action,
                    "timestamp": item.timestamp,
                    "retryCount": item.retry_count,
                }
                for item in pending
            ],
        }

    # ─── Internal helpers ────────────────────────────────────────────────────

    def _create_sync_log(self) -> SyncLog:
        log = SyncLog(started_at=datetime.now(timezone.utc), status="running")
        with Session(self.store.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(
        self,
        log: SyncLog,
        *,
        result: Optional[SyncResult] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with Session(self.store.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.finished_at = datetime.now(timezone.utc)
            if result is not None:
                db_log.status = "partial" if result.failed else "success"
                db_log.records_downloaded = result.downloaded
                db_log.mutations_uploaded = result.uploaded
                db_log.mutations_failed = result.failed
            else:
                db_log.status = "error"
                db_log.error_message = error_message
            s.add(db_log)
            s.commit()
