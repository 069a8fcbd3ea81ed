"""
HTTP surface for editing sessions, exercised through httpx.ASGITransport.
"""
from contextlib import asynccontextmanager

import httpx
import pytest
import pytest_asyncio

from api.main import app
from api.workflows.services import SessionManager
from workflow_engine.runtime.status_stream import InMemoryStatusStream
from workflow_engine.storage.repository import TortoiseWorkflowRepository
from tests.shared_data import (
    OTHER_OWNER_ID,
    TEST_OWNER_ID,
    FlakyRepository,
    RecordingRunner,
    make_settings,
)


HEADERS = {"X-User-Id": TEST_OWNER_ID}


@pytest_asyncio.fixture
async def runner():
    return RecordingRunner()


@asynccontextmanager
async def _serve(manager: SessionManager):
    app.state.session_manager = manager
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
            yield http_client
    finally:
        await manager.close_all()
        app.state.session_manager = None


def _manager(runner=None, repository=None, **settings) -> SessionManager:
    return SessionManager(
        repository=repository or TortoiseWorkflowRepository(),
        runner=runner or RecordingRunner(),
        stream=InMemoryStatusStream(),
        settings=make_settings(**settings),
    )


@pytest_asyncio.fixture
async def client(db, runner):
    async with _serve(_manager(runner)) as http_client:
        yield http_client


async def _open_session(client, **payload) -> dict:
    response = await client.post("/v1/sessions", json=payload, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


async def _add_node(client, session_id, category, component_type, **extra) -> dict:
    response = await client.post(
        f"/v1/sessions/{session_id}/nodes",
        json={"category": category, "component_type": component_type, **extra},
        headers=HEADERS,
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_node_type_catalog(client):
    response = await client.get("/v1/builder/node-types", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert "input" in body["categories"]
    filtering = next(item for item in body["node_types"] if item["component_type"] == "filtering")
    assert filtering["category"] == "processing"
    assert filtering["default_config"]["operator"] == "equals"


@pytest.mark.asyncio
async def test_requests_without_user_are_rejected(client):
    response = await client.get("/v1/builder/node-types")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_edit_save_and_reach_session_by_both_ids(client):
    session = await _open_session(client, name="Report")
    temp_id = session["session_id"]
    assert session["is_temporary"] is True
    assert temp_id.startswith("temp-")

    upload = await _add_node(client, temp_id, "input", "fileUpload")
    filtering = await _add_node(client, temp_id, "processing", "filtering")

    edge = await client.post(
        f"/v1/sessions/{temp_id}/edges",
        json={"source_node_id": upload["id"], "target_node_id": filtering["id"]},
        headers=HEADERS,
    )
    assert edge.status_code == 201, edge.text
    assert edge.json()["warnings"] == []

    patched = await client.patch(
        f"/v1/sessions/{temp_id}/nodes/{upload['id']}/config",
        json={"config": {"filename": "sales.csv"}, "output_schema": [{"name": "amount", "type": "number"}]},
        headers=HEADERS,
    )
    assert patched.status_code == 200, patched.text
    assert patched.json()["config"]["filename"] == "sales.csv"

    saved = await client.post(f"/v1/sessions/{temp_id}/save", headers=HEADERS)
    assert saved.status_code == 200, saved.text
    body = saved.json()
    assert body["workflow_id"].startswith("wf_")
    assert body["name"] == "Report"
    assert body["save_state"] == "saved"
    assert body["warnings"] == []

    for key in (temp_id, body["workflow_id"]):
        fetched = await client.get(f"/v1/sessions/{key}", headers=HEADERS)
        assert fetched.status_code == 200
        assert fetched.json()["workflow_id"] == body["workflow_id"]
        assert fetched.json()["is_temporary"] is False

    view = fetched.json()
    assert len(view["edges"]) == 1
    columns = view["schemas"][filtering["id"]]["input"]
    assert [(column["name"], column["type"]) for column in columns] == [("amount", "number")]


@pytest.mark.asyncio
async def test_invalid_edits_map_to_problem_responses(client):
    session_id = (await _open_session(client))["session_id"]
    node = await _add_node(client, session_id, "input", "fileUpload")

    self_loop = await client.post(
        f"/v1/sessions/{session_id}/edges",
        json={"source_node_id": node["id"], "target_node_id": node["id"]},
        headers=HEADERS,
    )
    assert self_loop.status_code == 400
    assert self_loop.json()["detail"]["title"] == "Invalid connection"

    unknown_type = await client.post(
        f"/v1/sessions/{session_id}/nodes",
        json={"category": "output", "component_type": "fileUpload"},
        headers=HEADERS,
    )
    assert unknown_type.status_code == 400

    missing_node = await client.delete(f"/v1/sessions/{session_id}/nodes/nope", headers=HEADERS)
    assert missing_node.status_code == 404

    missing_edge = await client.delete(f"/v1/sessions/{session_id}/edges/nope", headers=HEADERS)
    assert missing_edge.status_code == 404


@pytest.mark.asyncio
async def test_sessions_are_private_to_their_owner(client):
    session_id = (await _open_session(client))["session_id"]

    response = await client.get(f"/v1/sessions/{session_id}", headers={"X-User-Id": OTHER_OWNER_ID})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_remove_node_reports_removed_edges(client):
    session_id = (await _open_session(client))["session_id"]
    a = await _add_node(client, session_id, "input", "fileUpload")
    b = await _add_node(client, session_id, "output", "outputNode")
    edge = await client.post(
        f"/v1/sessions/{session_id}/edges",
        json={"source_node_id": a["id"], "target_node_id": b["id"]},
        headers=HEADERS,
    )

    response = await client.delete(f"/v1/sessions/{session_id}/nodes/{a['id']}", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["removed_edges"] == [edge.json()["edge"]["id"]]


@pytest.mark.asyncio
async def test_run_saves_and_is_trackable(client, runner):
    session_id = (await _open_session(client))["session_id"]
    await _add_node(client, session_id, "input", "fileUpload")

    started = await client.post(f"/v1/sessions/{session_id}/runs", headers=HEADERS)
    assert started.status_code == 202, started.text
    run = started.json()
    assert run["status"] == "queued"
    assert runner.calls == [run["workflow_id"]]
    assert run["workflow_id"].startswith("wf_")

    fetched = await client.get(f"/v1/sessions/{session_id}/runs/{run['run_id']}", headers=HEADERS)
    assert fetched.status_code == 200
    assert fetched.json()["run_id"] == run["run_id"]

    missing = await client.get(f"/v1/sessions/{session_id}/runs/nope", headers=HEADERS)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_runner_failure_is_a_conflict(client, runner):
    runner.error = RuntimeError("runner offline")
    session_id = (await _open_session(client))["session_id"]

    response = await client.post(f"/v1/sessions/{session_id}/runs", headers=HEADERS)

    assert response.status_code == 409
    assert "runner offline" in response.json()["detail"]["detail"]


@pytest.mark.asyncio
async def test_closed_session_is_gone(client):
    session_id = (await _open_session(client))["session_id"]

    closed = await client.delete(f"/v1/sessions/{session_id}", headers=HEADERS)
    assert closed.status_code == 200

    response = await client.get(f"/v1/sessions/{session_id}", headers=HEADERS)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_autosaved_session_is_reachable_by_persistent_id(db):
    manager = _manager(autosave_quiet_period_seconds=0.01)
    async with _serve(manager) as client:
        temp_id = (await _open_session(client))["session_id"]
        await _add_node(client, temp_id, "input", "fileUpload")

        session = manager.get(TEST_OWNER_ID, temp_id)
        await session.settle(autosave=True)
        assert not session.is_temporary

        response = await client.get(f"/v1/sessions/{session.workflow_id}", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["workflow_id"] == session.workflow_id
    assert response.json()["save_state"] == "saved"


@pytest.mark.asyncio
async def test_failed_propagation_is_reported_on_the_session(db):
    manager = _manager(repository=FlakyRepository(input_failures=100))
    async with _serve(manager) as client:
        session_id = (await _open_session(client))["session_id"]
        upload = await _add_node(client, session_id, "input", "fileUpload")
        filtering = await _add_node(client, session_id, "processing", "filtering")
        await client.post(
            f"/v1/sessions/{session_id}/edges",
            json={"source_node_id": upload["id"], "target_node_id": filtering["id"]},
            headers=HEADERS,
        )
        await client.patch(
            f"/v1/sessions/{session_id}/nodes/{upload['id']}/config",
            json={"output_schema": [{"name": "amount", "type": "number"}]},
            headers=HEADERS,
        )
        await manager.get(TEST_OWNER_ID, session_id).settle()

        response = await client.get(f"/v1/sessions/{session_id}", headers=HEADERS)

    [issue] = response.json()["propagation_issues"]
    assert issue["source_node_id"] == upload["id"]
    assert issue["target_node_id"] == filtering["id"]
    assert issue["outcome"] == "failed"
    assert "schema store unavailable" in issue["error"]
