"""
OfflineDataService: the offline-first facade consumers talk to.

Reads always come from the local store (refreshed from the server first when
online). Writes always land in the local store first, which also queues the
change; when online a background sync pass is started to push it out.

build_service() wires the default object graph from Settings.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from fieldsync.config import Settings, get_settings
from fieldsync.models.mutation import Mutation, MutationStatus
from fieldsync.models.record import EntityRecord
from fieldsync.sync.engine import SyncEngine, SyncResult
from fieldsync.sync.errors import CredentialUnavailableError, OfflineError
from fieldsync.sync.status import SyncStatus

logger = logging.getLogger(__name__)


class UnknownEntityKindError(KeyError):
    """Raised for an entity kind that is not configured."""


class OfflineDataService:
    """
    Args:
        engine: SyncEngine (owns the store, monitor and broadcaster).
        retention_days: Age after which completed queue entries are reaped.
    """

    def __init__(self, engine: SyncEngine, *, retention_days: int = 7):
        self.engine = engine
        self.store = engine.store
        self.monitor = engine.monitor
        self.retention_days = retention_days
        self._background: Set[asyncio.Task] = set()

    async def init(self) -> None:
        await self.engine.init()

    @property
    def kinds(self) -> List[str]:
        return list(self.engine.kinds)

    def _check_kind(self, kind: str) -> None:
        if kind not in self.engine.kinds:
            raise UnknownEntityKindError(kind)

    # ─── Records ─────────────────────────────────────────────────────────────

    async def get_all(self, kind: str, *, refresh: bool = True) -> List[EntityRecord]:
        """Return local records, downloading the latest server data first when possible."""
        self._check_kind(kind)
        if refresh and self.monitor.is_online and not self.engine.is_syncing:
            try:
                await self.engine.download_latest_data()
            except CredentialUnavailableError as exc:
                logger.info("Failed to download latest data, using local data: %s", exc)
        return self.store.get_all(kind)

    def get(self, kind: str, record_id: str) -> Optional[EntityRecord]:
        self._check_kind(kind)
        return self.store.get(kind, record_id)

    async def create(self, kind: str, fields: Dict[str, Any]) -> EntityRecord:
        self._check_kind(kind)
        record = self.store.put(kind, fields)
        self._sync_in_background()
        return record

    async def update(self, kind: str, record_id: str, fields: Dict[str, Any]) -> EntityRecord:
        self._check_kind(kind)
        record = self.store.put(kind, fields, record_id=record_id)
        self._sync_in_background()
        return record

    async def delete(self, kind: str, record_id: str) -> bool:
        self._check_kind(kind)
        removed = self.store.delete(kind, record_id)
        self._sync_in_background()
        return removed

    # ─── Sync ────────────────────────────────────────────────────────────────

    def get_sync_status(self) -> SyncStatus:
        return self.engine.current_status()

    async def force_sync(self) -> SyncResult:
        """Manual "sync now". Raises OfflineError when offline."""
        if not self.monitor.is_online:
            raise OfflineError("Cannot sync while offline")
        logger.info("Manual sync triggered")
        return await self.engine.perform_sync()

    def get_mutations(self, status: Optional[MutationStatus] = None) -> List[Mutation]:
        return self.store.get_mutations(status)

    def retry_failed(self, mutation_id: Optional[int] = None) -> int:
        return self.store.retry_failed(mutation_id)

    def cleanup(self) -> int:
        return self.store.cleanup(self.retention_days)

    async def wait_for_background(self) -> None:
        """Await any background sync passes started by writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _sync_in_background(self) -> None:
        if not self.monitor.is_online:
            return
        task = asyncio.ensure_future(self._background_sync())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_sync(self) -> None:
        try:
            await self.engine.perform_sync()
        except CredentialUnavailableError as exc:
            logger.info("Background sync failed, will retry later: %s", exc)
        except Exception:
            logger.exception("Background sync crashed")


def build_service(settings: Optional[Settings] = None, db_engine=None) -> OfflineDataService:
    """Construct the default store/transport/identity/engine graph from settings."""
    from fieldsync.db.engine import get_engine
    from fieldsync.identity.tokens import ClientCredentialsProvider, TokenManager
    from fieldsync.remote.client import RemoteStoreClient
    from fieldsync.store.local_store import LocalStore
    from fieldsync.sync.network import NetworkMonitor
    from fieldsync.sync.retry import RetryPolicy, fixed_backoff

    settings = settings or get_settings()
    store = LocalStore(db_engine or get_engine(), max_retries=settings.max_retries)

    provider = None
    if settings.identity_token_url:
        provider = ClientCredentialsProvider(
            settings.identity_token_url,
            settings.identity_client_id,
            settings.identity_client_secret,
        )
    tokens = TokenManager(
        store, provider, settings.token_scope,
        default_ttl_seconds=settings.default_token_ttl_seconds,
    )
    remote = RemoteStoreClient(
        settings.remote_base_url,
        api_path=settings.remote_api_path,
        headers=settings.remote_headers,
        item_style=settings.remote_item_style,
        timeout=settings.remote_timeout_seconds,
    )
    monitor = NetworkMonitor(probe_url=settings.connectivity_probe_url)
    retry_policy = RetryPolicy(
        max_retries=settings.max_retries,
        backoff=fixed_backoff(settings.retry_backoff_seconds) if settings.retry_backoff_seconds else None,
    )
    engine = SyncEngine(
        store, remote, tokens, monitor,
        kinds=settings.entity_kinds,
        retry_policy=retry_policy,
    )
    return OfflineDataService(engine, retention_days=settings.queue_retention_days)
