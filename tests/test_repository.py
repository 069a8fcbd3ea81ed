"""
Tortoise-backed workflow repository against in-memory sqlite.
"""
import pytest

from shared.database.workflow_models import (
    NodeSchemaRecord,
    SchemaDirection,
    WorkflowEdgeRecord,
    WorkflowRunRecord,
)
from workflow_engine.errors import WorkflowNotFoundError
from workflow_engine.graph.workflow_graph import WorkflowGraph
from workflow_engine.schema.columns import schemas_equal
from workflow_engine.schema.models import ExecutionRun, RunStatus, WorkflowDefinition
from workflow_engine.storage.repository import TortoiseWorkflowRepository
from tests.shared_data import OTHER_OWNER_ID, TEST_OWNER_ID, amount_schema


def _definition(name: str = "Report") -> WorkflowDefinition:
    graph = WorkflowGraph()
    a = graph.add_node("input", "fileUpload")
    b = graph.add_node("processing", "filtering")
    graph.connect_nodes(a.id, b.id, target_handle="in")
    return graph.to_definition("temp-draft", name)


@pytest.mark.asyncio
async def test_create_and_load_workflow(db):
    repository = TortoiseWorkflowRepository()

    created = await repository.create_workflow(TEST_OWNER_ID, _definition())
    loaded = await repository.load_workflow(TEST_OWNER_ID, created.id)

    assert created.id.startswith("wf_")
    assert loaded.name == "Report"
    assert [node.id for node in loaded.nodes] == [node.id for node in created.nodes]
    assert loaded.edges[0].target_handle == "in"


@pytest.mark.asyncio
async def test_names_are_unique_per_owner(db):
    repository = TortoiseWorkflowRepository()

    first = await repository.create_workflow(TEST_OWNER_ID, _definition("Report"))
    second = await repository.create_workflow(TEST_OWNER_ID, _definition("Report"))
    third = await repository.create_workflow(TEST_OWNER_ID, _definition("Report"))
    other_owner = await repository.create_workflow(OTHER_OWNER_ID, _definition("Report"))

    assert [first.name, second.name, third.name] == ["Report", "Report1", "Report2"]
    assert other_owner.name == "Report"


@pytest.mark.asyncio
async def test_load_is_scoped_to_owner(db):
    repository = TortoiseWorkflowRepository()
    created = await repository.create_workflow(TEST_OWNER_ID, _definition())

    with pytest.raises(WorkflowNotFoundError):
        await repository.load_workflow(OTHER_OWNER_ID, created.id)
    with pytest.raises(WorkflowNotFoundError):
        await repository.load_workflow(TEST_OWNER_ID, "temp-unsaved")


@pytest.mark.asyncio
async def test_edge_rows_keep_handles_and_rekey(db):
    repository = TortoiseWorkflowRepository()
    definition = _definition()

    await repository.replace_edges("temp-1", definition.edges)
    assert await repository.rekey_edges("temp-1", "wf_9") == 1

    assert await repository.list_edges("temp-1") == []
    edges = await repository.list_edges("wf_9")
    assert edges[0].id == definition.edges[0].id
    assert edges[0].target_handle == "in"
    assert edges[0].metadata == {}


@pytest.mark.asyncio
async def test_failed_edge_replace_keeps_previous_rows(db, monkeypatch):
    repository = TortoiseWorkflowRepository()
    original = _definition()
    await repository.replace_edges("wf_3", original.edges)

    async def failing_bulk_create(*args, **kwargs):
        raise RuntimeError("insert rejected")

    monkeypatch.setattr(WorkflowEdgeRecord, "bulk_create", failing_bulk_create)
    with pytest.raises(RuntimeError, match="insert rejected"):
        await repository.replace_edges("wf_3", _definition().edges)

    edges = await repository.list_edges("wf_3")
    assert [edge.id for edge in edges] == [edge.id for edge in original.edges]


@pytest.mark.asyncio
async def test_node_schema_upsert_and_rekey(db):
    repository = TortoiseWorkflowRepository()

    await repository.write_node_schema("temp-1", "node-a", SchemaDirection.INPUT, amount_schema())
    await repository.write_node_schema("temp-1", "node-a", SchemaDirection.INPUT, amount_schema())
    await repository.write_node_schema("temp-1", "node-a", SchemaDirection.OUTPUT, amount_schema())

    assert await NodeSchemaRecord.filter(workflow_id="temp-1").count() == 2
    assert await repository.rekey_node_schemas("temp-1", "wf_1") == 2
    stored = await repository.read_node_schema("wf_1", "node-a", SchemaDirection.INPUT)
    assert schemas_equal(stored, amount_schema())

    await repository.delete_node_schemas("wf_1", "node-a", SchemaDirection.INPUT)
    assert list((await repository.list_node_schemas("wf_1"))["node-a"]) == [SchemaDirection.OUTPUT]


@pytest.mark.asyncio
async def test_run_records(db):
    repository = TortoiseWorkflowRepository()
    created = await repository.create_workflow(TEST_OWNER_ID, _definition())
    run = ExecutionRun(id="run-1", workflow_id=created.id)

    await repository.record_run(run)
    run.status = RunStatus.completed
    await repository.update_run(run)

    record = await WorkflowRunRecord.get(run_id="run-1")
    assert record.status == "completed"
    assert record.finished_at is not None
