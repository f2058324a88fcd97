"""End-to-end: real RemoteStoreClient against an in-memory server behind httpx.MockTransport."""
import json

import httpx
import pytest

from conftest import KINDS, assert_queue_consistent, make_mock_tokens
from fieldsync.models.mutation import MutationStatus
from fieldsync.remote.client import RemoteStoreClient
from fieldsync.service import OfflineDataService
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.network import NetworkMonitor

ID_FIELDS = {k.collection: k.id_field for k in KINDS}


class FakeServer:
    """Minimal record store speaking the same REST dialect as the real one."""

    def __init__(self):
        self.tables = {name: {} for name in ID_FIELDS}
        self.requests = []
        self.failures = []  # status codes to return for the next write requests
        self._next_id = 100

    def seed(self, collection, record_id, **fields):
        self.tables[collection][record_id] = {ID_FIELDS[collection]: record_id, **fields}

    def handler(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")[1:]  # drop the "api" prefix
        collection = parts[0]
        record_id = parts[1] if len(parts) > 1 else None
        self.requests.append((request.method, collection, record_id))
        table = self.tables[collection]

        if request.method != "GET" and self.failures:
            return httpx.Response(self.failures.pop(0), json={"error": {"message": "unavailable"}})

        if request.method == "GET":
            return httpx.Response(200, json={"value": list(table.values())})
        if request.method == "POST":
            self._next_id += 1
            new_id = f"srv-{self._next_id}"
            table[new_id] = {ID_FIELDS[collection]: new_id, **json.loads(request.content)}
            return httpx.Response(204, headers={
                "OData-EntityId": f"https://remote.example/api/{collection}({new_id})",
            })
        if request.method == "PATCH":
            if record_id not in table:
                return httpx.Response(404)
            table[record_id].update(json.loads(request.content))
            return httpx.Response(204)
        if request.method == "DELETE":
            if table.pop(record_id, None) is None:
                return httpx.Response(404)
            return httpx.Response(204)
        return httpx.Response(405)


@pytest.fixture(name="server")
def server_fixture() -> FakeServer:
    return FakeServer()


@pytest.fixture(name="e2e")
def e2e_fixture(store, server):
    remote = RemoteStoreClient(
        "https://remote.example", api_path="api",
        transport=httpx.MockTransport(server.handler),
    )
    monitor = NetworkMonitor(initially_online=False)
    engine = SyncEngine(store, remote, make_mock_tokens(), monitor, kinds=KINDS)
    return OfflineDataService(engine)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_offline_session_round_trip(self, e2e, store, server):
        server.seed("participants", "srv-1", name="Sam")
        await e2e.init()

        alex = await e2e.create("participants", {"name": "Alex"})
        await e2e.update("participants", alex.id, {"name": "Alex", "age": 40})
        await e2e.create("sessions", {"notes": "first visit"})
        assert store.pending_count() == 2

        await e2e.monitor.set_online(True)

        participants = {r.attributes["name"]: r for r in store.get_all("participants")}
        assert set(participants) == {"Sam", "Alex"}
        assert participants["Alex"].id.startswith("srv-")
        assert participants["Alex"].attributes == {"name": "Alex", "age": 40}
        assert all(not r.id.startswith("offline_") for r in store.get_all("sessions"))
        assert store.pending_count() == 0
        assert_queue_consistent(store)

        server_alex = server.tables["participants"][participants["Alex"].id]
        assert server_alex == {"participantid": participants["Alex"].id, "name": "Alex", "age": 40}
        await e2e.engine.remote.close()

    @pytest.mark.asyncio
    async def test_second_pass_is_quiet(self, e2e, store, server):
        await e2e.init()
        await e2e.create("participants", {"name": "Alex"})
        await e2e.monitor.set_online(True)
        server.requests.clear()

        await e2e.force_sync()

        assert all(method == "GET" for method, _, _ in server.requests)
        assert len(store.get_all("participants")) == 1
        await e2e.engine.remote.close()

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, e2e, store, server):
        server.seed("participants", "srv-1", name="Sam")
        await e2e.init()
        await e2e.monitor.set_online(True)
        await e2e.monitor.set_online(False)

        await e2e.update("participants", "srv-1", {"name": "Samuel"})
        server.failures = [503, 503]

        await e2e.monitor.set_online(True)
        assert store.get_pending_mutations()[0].retry_count == 1
        await e2e.force_sync()
        assert store.get_pending_mutations()[0].retry_count == 2
        await e2e.force_sync()

        assert store.pending_count() == 0
        assert server.tables["participants"]["srv-1"]["name"] == "Samuel"
        await e2e.engine.remote.close()

    @pytest.mark.asyncio
    async def test_persistent_failure_is_parked(self, e2e, store, server):
        server.seed("participants", "srv-1", name="Sam")
        await e2e.init()
        await e2e.monitor.set_online(True)
        await e2e.update("participants", "srv-1", {"name": "Samuel"})
        await e2e.wait_for_background()
        await e2e.monitor.set_online(False)

        await e2e.update("participants", "srv-1", {"name": "Sammy"})
        server.failures = [500, 500, 500, 500]
        await e2e.monitor.set_online(True)
        await e2e.force_sync()
        await e2e.force_sync()
        await e2e.force_sync()

        parked = e2e.get_mutations(MutationStatus.FAILED)
        assert len(parked) == 1
        assert parked[0].retry_count == 3
        assert parked[0].last_error == "HTTP 500: unavailable"
        assert server.tables["participants"]["srv-1"]["name"] == "Samuel"
        await e2e.engine.remote.close()

    @pytest.mark.asyncio
    async def test_delete_of_already_deleted_record_completes(self, e2e, store, server):
        await e2e.init()
        store.put("sessions", {"notes": "x"}, record_id="srv-5", is_from_server=True)
        await e2e.delete("sessions", "srv-5")

        await e2e.monitor.set_online(True)

        assert ("DELETE", "sessions", "srv-5") in server.requests
        assert store.pending_count() == 0
        assert e2e.get_mutations(MutationStatus.COMPLETED)[0].entity_id == "srv-5"
        await e2e.engine.remote.close()
