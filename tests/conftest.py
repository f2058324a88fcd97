"""Shared test fixtures."""
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from fieldsync.config import EntityKind
from fieldsync.db.engine import init_schema
from fieldsync.models.mutation import Mutation, MutationStatus
from fieldsync.models.record import EntityRecord
from fieldsync.store.local_store import LocalStore
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.network import NetworkMonitor

PARTICIPANTS = EntityKind(name="participants", collection="participants", id_field="participantid")
SESSIONS = EntityKind(name="sessions", collection="sessions", id_field="sessionid")
KINDS = [PARTICIPANTS, SESSIONS]


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_mock_remote(rows=None, created_id="srv-77"):
    """AsyncMock standing in for RemoteStoreClient.

    Args:
        rows: {kind name: [server rows]} returned by list_records.
        created_id: Id returned by create_record.
    """
    rows = rows or {}
    remote = AsyncMock()

    async def list_records(kind, token):
        return list(rows.get(kind.name, []))

    remote.list_records = AsyncMock(side_effect=list_records)
    remote.create_record = AsyncMock(return_value=created_id)
    remote.update_record = AsyncMock(return_value=None)
    remote.delete_record = AsyncMock(return_value=None)
    return remote


def make_mock_tokens(token="tok-123"):
    tokens = AsyncMock()
    tokens.get_token = AsyncMock(return_value=token)
    return tokens


def assert_queue_consistent(store: LocalStore) -> None:
    """Every dirty record has exactly one live (pending/failed) queue entry."""
    with Session(store.engine) as s:
        dirty = s.exec(select(EntityRecord).where(EntityRecord.needs_sync == True)).all()  # noqa: E712
        for record in dirty:
            live = s.exec(
                select(Mutation)
                .where(Mutation.entity_type == record.kind)
                .where(Mutation.entity_id == record.id)
                .where(Mutation.status != MutationStatus.COMPLETED.value)
            ).all()
            assert len(live) == 1, f"{record.kind}/{record.id} has {len(live)} live entries"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine with the full schema. Fresh per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_schema(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="store")
def store_fixture(engine, clock) -> LocalStore:
    return LocalStore(engine, max_retries=3, clock=clock)


@pytest.fixture(name="monitor")
def monitor_fixture() -> NetworkMonitor:
    return NetworkMonitor(initially_online=True)


@pytest.fixture(name="remote")
def remote_fixture():
    return make_mock_remote()


@pytest.fixture(name="tokens")
def tokens_fixture():
    return make_mock_tokens()


@pytest.fixture(name="sync_engine")
def sync_engine_fixture(store, remote, tokens, monitor) -> SyncEngine:
    return SyncEngine(store, remote, tokens, monitor, kinds=KINDS)
