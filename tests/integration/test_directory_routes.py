"""
Route tests against a real engine wired to in-memory fakes.
"""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from identity_cache.db.schema import FULL_VERIFICATION_FLAG_KEY
from identity_cache.routes import directory, maintenance
from identity_cache.services.engine import IdentityCacheEngine
from tests.fakes import (
    CURRENT_USER_ID,
    FakeDirectoryStore,
    FakeRemoteAuthority,
    direct_channel,
    make_record,
)


@pytest.fixture
def engine():
    store = FakeDirectoryStore(
        [
            make_record("grp-1", "CRM", channel_identifier="grp-1", is_distinct=False),
            make_record("dm-bob", "Bob", user_id="u-bob", channel_identifier="dm-bob"),
        ]
    )
    remote = FakeRemoteAuthority([direct_channel("dm-1", "u-1", "Alice")])
    engine = IdentityCacheEngine(store, client=remote, current_user_id=CURRENT_USER_ID)
    asyncio.run(engine.start(run_startup_sequence=False))
    return engine


@pytest.fixture
def client(engine):
    app = FastAPI()
    app.include_router(directory.router)
    app.include_router(maintenance.router)
    app.state.engine = engine
    return TestClient(app)


ALICE = {
    "id": "dm-1",
    "name": "Alice",
    "type": "user",
    "user_id": "u-1",
    "channel_identifier": "dm-1",
}


def test_record_interaction(client, engine):
    response = client.post("/directory/interactions", json=ALICE)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "recorded"
    assert data["record"]["type"] == "user"
    assert data["record"]["identity"]["name"] == "Alice"
    assert data["record"]["verification"]["is_verified"] is True
    assert "dm-1" in engine.store.records


def test_corrupted_interaction_is_rejected(client, engine):
    response = client.post(
        "/directory/interactions",
        json={
            "id": "sendbird_group_channel_abc",
            "name": "Design",
            "channel_identifier": "sendbird_group_channel_xyz",
        },
    )

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert "sendbird_group_channel_abc" not in engine.store.records


def test_ingest_search_results(client, engine):
    response = client.post(
        "/directory/search-results",
        json={"term": "ali", "items": [{**ALICE, "id": "sendbird_user_u1"}, {"id": "name_X", "name": "X"}]},
    )

    assert response.status_code == 200
    assert response.json() == {"accepted": 1, "record_ids": ["dm-1"]}
    assert engine.store.metadata["total_searches"] == 1


def test_ingest_requires_term(client):
    response = client.post("/directory/search-results", json={"term": "", "items": []})

    assert response.status_code == 422


def test_pin_flow(client):
    assert client.post("/directory/records/grp-1/pin").json() == {"success": True, "record_id": "grp-1"}
    assert client.post("/directory/records/dm-bob/pin").status_code == 200

    pinned = client.get("/directory/pinned").json()
    assert [r["identity"]["id"] for r in pinned] == ["grp-1", "dm-bob"]

    assert client.put("/directory/pins/order", json={"record_ids": ["dm-bob"]}).status_code == 200
    pinned = client.get("/directory/pinned").json()
    assert [r["identity"]["id"] for r in pinned] == ["dm-bob", "grp-1"]

    assert client.delete("/directory/records/dm-bob/pin").status_code == 200
    assert [r["identity"]["id"] for r in client.get("/directory/pinned").json()] == ["grp-1"]


def test_pin_missing_record(client):
    assert client.post("/directory/records/missing/pin").status_code == 409
    assert client.delete("/directory/records/missing/pin").status_code == 404


def test_recent_and_current(client):
    assert client.get("/directory/current").json() is None

    client.post("/directory/interactions", json=ALICE)

    recent = client.get("/directory/recent").json()
    assert [r["identity"]["id"] for r in recent] == ["dm-1"]
    assert client.get("/directory/current").json()["identity"]["id"] == "dm-1"

    important = client.get("/directory/important").json()
    assert [(i["result_type"], i["record"]["identity"]["id"]) for i in important] == [("recent", "dm-1")]


def test_get_and_lookup_records(client):
    assert client.get("/directory/records/grp-1").json()["identity"]["name"] == "CRM"
    assert client.get("/directory/records/missing").status_code == 404

    assert client.get("/directory/lookup", params={"name": "bob"}).json()["identity"]["id"] == "dm-bob"
    by_channel = client.get("/directory/lookup", params={"channel_identifier": "grp-1"})
    assert by_channel.json()["identity"]["id"] == "grp-1"
    assert client.get("/directory/lookup").status_code == 400
    assert client.get("/directory/lookup", params={"name": "nobody"}).status_code == 404


def test_search_and_coverage(client):
    response = client.get("/directory/search", params={"q": "crm"})

    assert response.status_code == 200
    data = response.json()
    assert data["query"] == "crm"
    assert data["results"][0]["record"]["identity"]["id"] == "grp-1"
    assert data["results"][0]["search_score"] == 1100

    assert client.get("/directory/coverage", params={"q": "crm"}).json() == {
        "query": "crm",
        "has_good_coverage": True,
    }
    assert client.get("/directory/search").status_code == 422


def test_statistics(client):
    stats = client.get("/directory/statistics").json()

    assert stats["total_records"] == 2
    assert stats["pinned_records"] == 0
    assert stats["database_size_estimate"] == 2 * 2048


def test_maintenance_endpoints(client, engine):
    cleanup = client.post("/directory/maintenance/cleanup").json()
    assert cleanup == {
        "operation": "cleanup",
        "result": {"skipped": False, "by_name": 0, "by_channel_identifier": 0},
    }

    sweep = client.post("/directory/maintenance/expiry-sweep").json()
    assert sweep == {"operation": "expiry_sweep", "result": {"removed": 0}}

    flagged = client.post("/directory/maintenance/full-verification", params={"next_startup": True})
    assert flagged.status_code == 202
    assert engine.store.metadata[FULL_VERIFICATION_FLAG_KEY] is True

    consolidated = client.post("/directory/maintenance/consolidate").json()
    assert consolidated["result"] == {"users_consolidated": 0, "records_removed": 0}


def test_ui_operation_markers(client, engine):
    assert client.post("/directory/maintenance/ui-operations/start").json() == {"in_progress": 1}
    assert engine.maintenance.ui_operations_in_progress == 1
    assert client.post("/directory/maintenance/ui-operations/end").json() == {"in_progress": 0}


def test_engine_not_ready_returns_503():
    app = FastAPI()
    app.include_router(directory.router)

    response = TestClient(app).get("/directory/pinned")

    assert response.status_code == 503
