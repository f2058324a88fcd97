"""
LocalStore: the durable, transactional record store behind the sync engine.

Holds three things in one SQLite database:
  1. EntityRecord rows, one collection per entity kind
  2. The Mutation queue (pending create/update/delete operations)
  3. CachedToken rows for offline authentication

Every write that touches both a record and the queue happens inside one
Session/commit, so a crash can never leave a dirty record without a live
queue entry, or a queue entry created without its record write.

The store has no network awareness. Storage errors (SQLAlchemy exceptions)
propagate to the caller unchanged.
"""
import logging
import random
import string
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from fieldsync.models.mutation import Mutation, MutationAction, MutationKind, MutationStatus
from fieldsync.models.record import OFFLINE_ID_PREFIX, EntityRecord, is_placeholder_id
from fieldsync.models.token import CachedToken

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
_ID_ALPHABET = string.digits + string.ascii_lowercase
_DAY_MS = 24 * 60 * 60 * 1000


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class LocalStore:
    """
    Transactional local store for records, the mutation queue and tokens.

    Args:
        engine: SQLAlchemy engine with the schema created (see db.engine.init_schema).
        max_retries: Failed attempts after which an entry is parked as `failed`.
        clock: Returns the current time in epoch milliseconds. Injected by tests.
    """

    def __init__(
        self,
        engine,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.engine = engine
        self.max_retries = max_retries
        self._clock = clock or _epoch_ms

    def now(self) -> int:
        return self._clock()

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ─── Records ─────────────────────────────────────────────────────────────

    def get_all(self, kind: str) -> List[EntityRecord]:
        """Return every record of one entity kind, oldest write first."""
        with self._session() as s:
            return list(s.exec(
                select(EntityRecord)
                .where(EntityRecord.kind == kind)
                .order_by(EntityRecord.last_modified, EntityRecord.id)
            ).all())

    def get(self, kind: str, record_id: str) -> Optional[EntityRecord]:
        with self._session() as s:
            return self._get_record(s, kind, record_id)

    def put(
        self,
        kind: str,
        fields: Dict[str, Any],
        *,
        record_id: Optional[str] = None,
        is_from_server: bool = False,
    ) -> EntityRecord:
        """
        Insert or replace a record.

        A record without an id gets an `offline_<ms>_<random>` placeholder.
        Local writes (is_from_server=False) mark the record dirty and enqueue
        a CREATE (placeholder id) or UPDATE (server id) in the same transaction.
        Server writes never enqueue anything and clear `needs_sync`.

        Returns:
            The persisted record.
        """
        now = self.now()
        if not record_id:
            record_id = self._new_placeholder_id(now)

        with self._session() as s:
            record = self._get_record(s, kind, record_id)
            if record is None:
                record = EntityRecord(kind=kind, id=record_id)
            record.attributes = dict(fields)
            record.last_modified = now
            record.is_offline_created = (not is_from_server) and is_placeholder_id(record_id)
            record.needs_sync = not is_from_server
            s.add(record)

            if not is_from_server:
                action = (
                    MutationAction.CREATE if is_placeholder_id(record_id)
                    else MutationAction.UPDATE
                )
                self._enqueue(s, kind, action, record_id, dict(fields), now)

            s.commit()
            s.refresh(record)
            return record

    def delete(self, kind: str, record_id: str, *, is_from_server: bool = False) -> bool:
        """
        Remove a record.

        A local delete of a server-known id enqueues a DELETE. A local delete of
        a placeholder id cancels its unsent CREATE instead, since the remote
        store has never seen the record.

        Returns:
            True if a record was removed.
        """
        now = self.now()
        with self._session() as s:
            record = self._get_record(s, kind, record_id)
            if record is not None:
                s.delete(record)

            if not is_from_server:
                if is_placeholder_id(record_id):
                    for entry in self._live_entries(s, kind, record_id):
                        logger.debug("Cancelling unsent %s #%s for %s", entry.action, entry.id, record_id)
                        s.delete(entry)
                else:
                    self._enqueue(s, kind, MutationAction.DELETE, record_id, None, now)

            s.commit()
        return record is not None

    def complete_create(self, uploaded: Mutation, server_id: str) -> Optional[EntityRecord]:
        """
        Apply the server-issued id after a successful CREATE upload.

        In one transaction: the placeholder record moves to `server_id`, and
        the queue entry is completed. If a newer local write landed while the
        CREATE was in flight, the entry is repointed at `server_id` as an
        UPDATE instead and the record stays dirty. If the record was deleted
        locally mid-flight, a DELETE for the new server record is queued.

        Args:
            uploaded: The entry as it was read before the upload.
            server_id: Id issued by the remote store.

        Returns:
            The record now stored under `server_id`, or None if it was deleted.
        """
        now = self.now()
        kind = uploaded.entity_type
        placeholder_id = uploaded.entity_id
        with self._session() as s:
            entry = s.get(Mutation, uploaded.id)
            record = self._get_record(s, kind, placeholder_id)

            if entry is None or record is None:
                # Deleted locally while the CREATE was in flight
                logger.info("%s/%s was deleted during upload; queueing remote delete of %s",
                            kind, placeholder_id, server_id)
                if entry is not None:
                    s.delete(entry)
                self._enqueue(s, kind, MutationAction.DELETE, server_id, None, now)
                s.commit()
                return None

            superseded = entry.revision != uploaded.revision
            moved = self._get_record(s, kind, server_id) or EntityRecord(kind=kind, id=server_id)
            moved.attributes = dict(record.attributes or {})
            moved.last_modified = now
            moved.is_offline_created = False
            moved.needs_sync = superseded
            s.delete(record)
            s.add(moved)

            entry.entity_id = server_id
            entry.last_attempt = now
            if superseded:
                entry.action = MutationAction.UPDATE.value
                entry.status = MutationStatus.PENDING.value
            else:
                entry.status = MutationStatus.COMPLETED.value
                entry.completed_at = now
            s.add(entry)

            s.commit()
            s.refresh(moved)
            return moved

    # ─── Mutation queue ──────────────────────────────────────────────────────

    def enqueue_mutation(
        self,
        entity_type: str,
        action: MutationAction,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Mutation:
        """Append (or fold into the live entry for the same entity) a queue entry."""
        with self._session() as s:
            entry = self._enqueue(s, entity_type, MutationAction(action), entity_id, payload, self.now())
            s.commit()
            s.refresh(entry)
            return entry

    def get_pending_mutations(self) -> List[Mutation]:
        """All `pending` entries in enqueue order."""
        return self.get_mutations(MutationStatus.PENDING)

    def get_mutations(self, status: Optional[MutationStatus] = None) -> List[Mutation]:
        """Queue entries in enqueue order, optionally filtered by status."""
        with self._session() as s:
            query = select(Mutation).order_by(Mutation.id)
            if status is not None:
                query = query.where(Mutation.status == MutationStatus(status).value)
            return list(s.exec(query).all())

    def get_mutation(self, mutation_id: int) -> Optional[Mutation]:
        with self._session() as s:
            return s.get(Mutation, mutation_id)

    def pending_count(self) -> int:
        with self._session() as s:
            return s.exec(
                select(func.count()).select_from(Mutation)
                .where(Mutation.status == MutationStatus.PENDING.value)
            ).one()

    def has_pending_delete(self, entity_type: str, entity_id: str) -> bool:
        """True while a local delete of this record has not reached the remote store."""
        with self._session() as s:
            return any(
                entry.action == MutationAction.DELETE.value
                for entry in self._live_entries(s, entity_type, entity_id)
            )

    def mark_mutation_completed(self, mutation_id: int, *, revision: Optional[int] = None) -> bool:
        """
        Mark an entry completed and clear its record's `needs_sync`.

        When `revision` is given and the entry has since absorbed a newer local
        write, nothing changes: the entry stays pending for the next pass.

        Returns:
            True if the entry was completed.
        """
        now = self.now()
        with self._session() as s:
            entry = s.get(Mutation, mutation_id)
            if entry is None:
                return False
            if revision is not None and entry.revision != revision:
                logger.debug("Entry #%s changed during upload; leaving it pending", mutation_id)
                return False

            entry.status = MutationStatus.COMPLETED.value
            entry.completed_at = now
            entry.last_attempt = now
            s.add(entry)

            if entry.action != MutationAction.DELETE.value:
                record = self._get_record(s, entry.entity_type, entry.entity_id)
                if record is not None:
                    record.needs_sync = False
                    s.add(record)

            s.commit()
            return True

    def mark_mutation_failed(
        self,
        mutation_id: int,
        error: Any,
        *,
        revision: Optional[int] = None,
    ) -> Optional[Mutation]:
        """
        Record a failed attempt.

        Increments `retry_count`; the entry goes back to `pending` while under
        the retry ceiling and is parked as `failed` once it reaches it.
        A failure against a superseded revision is not counted.
        """
        now = self.now()
        with self._session() as s:
            entry = s.get(Mutation, mutation_id)
            if entry is None:
                return None

            entry.last_error = str(error)
            entry.last_attempt = now
            if revision is None or entry.revision == revision:
                entry.retry_count += 1
                if entry.retry_count >= self.max_retries:
                    entry.status = MutationStatus.FAILED.value
                    logger.warning(
                        "%s %s/%s failed %d times; parking it for review",
                        entry.action, entry.entity_type, entry.entity_id, entry.retry_count,
                    )
                else:
                    entry.status = MutationStatus.PENDING.value
            s.add(entry)
            s.commit()
            s.refresh(entry)
            return entry

    def retry_failed(self, mutation_id: Optional[int] = None) -> int:
        """Re-arm parked `failed` entries (all, or one by id). Returns how many."""
        with self._session() as s:
            query = select(Mutation).where(Mutation.status == MutationStatus.FAILED.value)
            if mutation_id is not None:
                query = query.where(Mutation.id == mutation_id)
            entries = s.exec(query).all()
            for entry in entries:
                entry.status = MutationStatus.PENDING.value
                entry.retry_count = 0
                s.add(entry)
            s.commit()
            return len(entries)

    def cleanup(self, retention_days: int = 7) -> int:
        """Physically remove completed entries older than the retention window."""
        cutoff = self.now() - retention_days * _DAY_MS
        with self._session() as s:
            stale = s.exec(
                select(Mutation)
                .where(Mutation.status == MutationStatus.COMPLETED.value)
                .where(Mutation.completed_at < cutoff)
            ).all()
            for entry in stale:
                s.delete(entry)
            s.commit()
        if stale:
            logger.info("Removed %d completed queue entries", len(stale))
        return len(stale)

    # ─── Token cache ─────────────────────────────────────────────────────────

    def save_token(self, scope: str, access_token: str, ttl_seconds: int) -> CachedToken:
        now = self.now()
        with self._session() as s:
            row = s.get(CachedToken, scope) or CachedToken(scope=scope, access_token=access_token, expires_at=0)
            row.access_token = access_token
            row.expires_at = now + int(ttl_seconds * 1000)
            row.saved_at = now
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

    def get_valid_token(self, scope: str) -> Optional[str]:
        """Return the cached token for `scope` if unexpired; expired rows are discarded."""
        with self._session() as s:
            row = s.get(CachedToken, scope)
            if row is None:
                return None
            if row.expires_at > self.now():
                return row.access_token
            s.delete(row)
            s.commit()
            return None

    # ─── Internal helpers ────────────────────────────────────────────────────

    def _new_placeholder_id(self, now: int) -> str:
        suffix = "".join(random.choices(_ID_ALPHABET, k=9))
        return f"{OFFLINE_ID_PREFIX}{now}_{suffix}"

    @staticmethod
    def _get_record(s: Session, kind: str, record_id: str) -> Optional[EntityRecord]:
        return s.exec(
            select(EntityRecord)
            .where(EntityRecord.kind == kind)
            .where(EntityRecord.id == record_id)
        ).first()

    @staticmethod
    def _live_entries(s: Session, entity_type: str, entity_id: str) -> List[Mutation]:
        return list(s.exec(
            select(Mutation)
            .where(Mutation.entity_type == entity_type)
            .where(Mutation.entity_id == entity_id)
            .where(Mutation.status != MutationStatus.COMPLETED.value)
            .order_by(Mutation.id)
        ).all())

    def _enqueue(
        self,
        s: Session,
        entity_type: str,
        action: MutationAction,
        entity_id: str,
        payload: Optional[Dict[str, Any]],
        now: int,
    ) -> Mutation:
        """
        Add a queue entry inside the caller's transaction.

        Keeps at most one live (pending/failed) entry per entity: a newer write
        is folded into the existing entry, which keeps its queue position,
        gets a fresh retry budget and a bumped revision.
        """
        live = self._live_entries(s, entity_type, entity_id)
        if not live:
            entry = Mutation(
                kind=_kind_for(action).value,
                entity_type=entity_type,
                action=action.value,
                entity_id=entity_id,
                payload=payload,
                timestamp=now,
            )
            s.add(entry)
            return entry

        entry = live[0]
        if action is MutationAction.DELETE:
            entry.action = MutationAction.DELETE.value
            entry.payload = None
        elif entry.action == MutationAction.CREATE.value:
            entry.payload = payload
        else:
            entry.action = action.value
            entry.payload = payload
        entry.kind = _kind_for(MutationAction(entry.action)).value
        entry.revision += 1
        entry.status = MutationStatus.PENDING.value
        entry.retry_count = 0
        entry.last_error = None
        s.add(entry)
        return entry


def _kind_for(action: MutationAction) -> MutationKind:
    if action is MutationAction.DELETE:
        return MutationKind.ENTITY_DELETE
    return MutationKind.ENTITY_SAVE
