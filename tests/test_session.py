"""
Editing sessions: save state machine, naming, migration of temporary state,
autosave and run start.
"""
import asyncio

import pytest

from shared.database.workflow_models import (
    NodeSchemaRecord,
    WorkflowEdgeRecord,
    WorkflowRecord,
    WorkflowRunRecord,
    parse_workflow_public_id,
)
from workflow_engine import open_session
from workflow_engine.errors import ExecutionStartError, WorkflowSaveError
from workflow_engine.runtime.propagation import PropagationOutcome
from workflow_engine.runtime.session import WorkflowSession
from workflow_engine.runtime.status_stream import InMemoryStatusStream
from workflow_engine.schema.columns import schemas_equal
from workflow_engine.schema.models import RunStatus, SaveState
from workflow_engine.storage.repository import TortoiseWorkflowRepository
from tests.shared_data import (
    OTHER_OWNER_ID,
    TEST_OWNER_ID,
    FlakyRepository,
    RecordingRunner,
    amount_and_date_schema,
    amount_schema,
    make_settings,
    wait_until,
)


async def _open(
    repository=None,
    runner=None,
    stream=None,
    owner_id=TEST_OWNER_ID,
    workflow_id=None,
    name=None,
    **settings,
) -> WorkflowSession:
    session = WorkflowSession(
        owner_id,
        repository=repository or TortoiseWorkflowRepository(),
        runner=runner or RecordingRunner(),
        stream=stream or InMemoryStatusStream(),
        workflow_id=workflow_id,
        name=name,
        settings=make_settings(**settings),
    )
    return await session.init()


async def _build_pipeline(session: WorkflowSession):
    upload = await session.add_node("input", "fileUpload")
    filtering = await session.add_node("processing", "filtering")
    output = await session.add_node("output", "outputNode")
    await session.connect(upload.id, filtering.id)
    await session.connect(filtering.id, output.id)
    await session.set_node_output_schema(upload.id, [{"name": "amount", "type": "number"}])
    await session.settle()
    return upload, filtering, output


@pytest.mark.asyncio
async def test_new_session_starts_temporary_and_idle(db):
    session = await _open()

    assert session.is_temporary
    assert session.workflow_id.startswith("temp-")
    assert session.save_state == SaveState.idle
    assert session.name == "New Workflow"
    await session.dispose()


@pytest.mark.asyncio
async def test_same_name_for_one_owner_gets_numbered(db):
    first = await _open(name="Report")
    second = await _open(name="Report")
    elsewhere = await _open(name="Report", owner_id=OTHER_OWNER_ID)

    assert (await first.save()).name == "Report"
    assert (await second.save()).name == "Report1"
    assert (await elsewhere.save()).name == "Report"
    assert second.name == "Report1"

    for session in (first, second, elsewhere):
        await session.dispose()


@pytest.mark.asyncio
async def test_first_save_migrates_every_temporary_entry(db):
    session = await _open()
    await _build_pipeline(session)
    temp_id = session.workflow_id

    nodes_before = len(session.graph.nodes)
    edge_rows_before = await WorkflowEdgeRecord.filter(workflow_id=temp_id).count()
    schema_rows_before = await NodeSchemaRecord.filter(workflow_id=temp_id).count()
    cache_before = session.registry.count(temp_id)
    assert edge_rows_before == 2
    assert schema_rows_before > 0

    definition = await session.save()
    real_id = session.workflow_id

    assert definition.id == real_id
    assert real_id.startswith("wf_")
    assert not session.is_temporary
    assert session.save_state == SaveState.saved
    assert session.migration_report.ok

    assert len(session.graph.nodes) == nodes_before
    assert await WorkflowEdgeRecord.filter(workflow_id=real_id).count() == edge_rows_before
    assert await NodeSchemaRecord.filter(workflow_id=real_id).count() == schema_rows_before
    assert session.registry.count(real_id) == cache_before
    assert await WorkflowEdgeRecord.filter(workflow_id=temp_id).count() == 0
    assert await NodeSchemaRecord.filter(workflow_id=temp_id).count() == 0
    assert session.registry.count(temp_id) == 0
    await session.dispose()


@pytest.mark.asyncio
async def test_partial_migration_is_a_warning_not_a_failure(db):
    repository = FlakyRepository(edge_rekey_failures=10)
    session = await _open(repository=repository)
    await _build_pipeline(session)

    await session.save()

    assert session.save_state == SaveState.saved
    assert not session.is_temporary
    assert set(session.migration_report.failures) == {"edges"}
    assert session.migration_report.error is not None
    # The edge table is rewritten under the new id on every save
    assert await WorkflowEdgeRecord.filter(workflow_id=session.workflow_id).count() == 2
    await session.dispose()


@pytest.mark.asyncio
async def test_failed_save_keeps_temporary_identity(db):
    session = await _open(repository=FlakyRepository(create_failures=1))
    await session.add_node("input", "fileUpload")

    with pytest.raises(WorkflowSaveError):
        await session.save()

    assert session.save_state == SaveState.failed
    assert session.is_temporary
    assert "database unavailable" in session.last_error

    await session.save()
    assert session.save_state == SaveState.saved
    await session.dispose()


@pytest.mark.asyncio
async def test_later_saves_update_the_record(db):
    session = await _open(name="Report")
    await session.save()
    workflow_id = session.workflow_id

    await session.add_node("processing", "sorting")
    session.rename(description="monthly numbers")
    await session.save()

    assert session.workflow_id == workflow_id
    assert await WorkflowRecord.all().count() == 1
    record = await WorkflowRecord.get(id=int(workflow_id.removeprefix("wf_")))
    assert record.version == 2
    assert record.description == "monthly numbers"
    assert len(record.definition["nodes"]) == 1
    await session.dispose()


@pytest.mark.asyncio
async def test_autosave_collapses_a_burst_into_one_save(db):
    repository = FlakyRepository()
    session = await _open(repository=repository, autosave_quiet_period_seconds=0.02)

    node = await session.add_node("processing", "filtering")
    for value in ("a", "b", "c"):
        await session.update_node_config(node.id, {"value": value})
    assert session.autosave_pending

    await session.settle(autosave=True)

    assert len(repository.created) == 1
    assert session.save_state == SaveState.saved
    record = await WorkflowRecord.get(id=int(session.workflow_id.removeprefix("wf_")))
    assert record.definition["nodes"][0]["config"]["value"] == "c"
    await session.dispose()


@pytest.mark.asyncio
async def test_dispose_cancels_pending_autosave(db):
    session = await _open(autosave_quiet_period_seconds=0.05)
    await session.add_node("input", "fileUpload")
    assert session.autosave_pending

    await session.dispose()

    assert await WorkflowRecord.all().count() == 0


@pytest.mark.asyncio
async def test_reopening_a_saved_workflow_restores_graph_and_schemas(db):
    session = await _open(name="Report")
    upload, filtering, _ = await _build_pipeline(session)
    await session.save()
    workflow_id = session.workflow_id
    await session.dispose()

    reopened = await _open(workflow_id=workflow_id)

    assert reopened.workflow_id == workflow_id
    assert reopened.save_state == SaveState.saved
    assert reopened.name == "Report"
    assert len(reopened.graph.edges) == 2
    assert schemas_equal(reopened.registry.get_input(workflow_id, filtering.id), amount_schema())

    results = await reopened.set_node_output_schema(upload.id, amount_and_date_schema())
    assert results
    assert schemas_equal(reopened.registry.get_input(workflow_id, filtering.id), amount_and_date_schema())
    await reopened.dispose()


@pytest.mark.asyncio
async def test_removing_a_node_removes_its_edge_rows(db):
    session = await _open()
    _, filtering, _ = await _build_pipeline(session)

    removed = await session.remove_node(filtering.id)
    await session.settle()

    assert len(removed) == 2
    assert session.graph.edges == []
    assert await WorkflowEdgeRecord.filter(workflow_id=session.workflow_id).count() == 0
    await session.dispose()


@pytest.mark.asyncio
async def test_run_saves_first_then_starts_with_persistent_id(db):
    runner = RecordingRunner()
    stream = InMemoryStatusStream()
    session = await _open(runner=runner, stream=stream)
    await session.add_node("input", "fileUpload")

    run = await session.run()

    assert not session.is_temporary
    assert runner.calls == [session.workflow_id]
    assert run.status == RunStatus.queued
    assert await WorkflowRunRecord.filter(run_id=run.id).exists()

    stream.publish({"run_id": run.id, "status": "completed"})
    finished = await session.coordinator.wait_for_terminal(run.id, timeout=1.0)
    assert finished.status == RunStatus.completed
    record = await WorkflowRunRecord.get(run_id=run.id)
    assert record.status == "completed"
    await session.dispose()


@pytest.mark.asyncio
async def test_run_is_not_started_when_save_fails(db):
    runner = RecordingRunner()
    session = await _open(repository=FlakyRepository(create_failures=1), runner=runner)

    with pytest.raises(ExecutionStartError):
        await session.run()

    assert runner.calls == []
    assert session.is_temporary
    await session.dispose()


class GatedRepository(TortoiseWorkflowRepository):
    """Holds the first save open until ``gate`` is set."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()

    async def create_workflow(self, owner_id, definition):
        await self.gate.wait()
        return await super().create_workflow(owner_id, definition)


@pytest.mark.asyncio
async def test_edit_during_save_leaves_changes_unsaved(db):
    repository = GatedRepository()
    session = await _open(repository=repository)
    await session.add_node("input", "fileUpload")

    saving = asyncio.create_task(session.save())
    await wait_until(lambda: session.save_state == SaveState.saving)
    session.rename("Renamed while saving")
    repository.gate.set()
    await saving

    assert session.save_state == SaveState.idle
    assert session.autosave_pending

    await session.save()
    assert session.save_state == SaveState.saved
    assert (await WorkflowRecord.get(id=parse_workflow_public_id(session.workflow_id))).name == "Renamed while saving"
    await session.dispose()


@pytest.mark.asyncio
async def test_failed_propagation_stays_visible_until_it_succeeds(db):
    repository = FlakyRepository(input_failures=100)
    session = await _open(repository=repository)
    upload = await session.add_node("input", "fileUpload")
    filtering = await session.add_node("processing", "filtering")
    await session.connect(upload.id, filtering.id)

    await session.set_node_output_schema(upload.id, [{"name": "amount", "type": "number"}])
    await session.settle()

    [issue] = session.propagation_issues
    assert (issue.source_id, issue.target_id) == (upload.id, filtering.id)
    assert issue.outcome == PropagationOutcome.failed

    repository.input_failures = 0
    await session.set_node_output_schema(upload.id, [{"name": "total", "type": "number"}])
    await session.settle()

    assert session.propagation_issues == []
    await session.dispose()


@pytest.mark.asyncio
async def test_removing_an_edge_clears_its_propagation_issue(db):
    session = await _open(repository=FlakyRepository(input_failures=100))
    upload = await session.add_node("input", "fileUpload")
    filtering = await session.add_node("processing", "filtering")
    connection = await session.connect(upload.id, filtering.id)
    await session.set_node_output_schema(upload.id, [{"name": "amount", "type": "number"}])
    await session.settle()
    assert len(session.propagation_issues) == 1

    await session.disconnect(connection.edge.id)

    assert session.propagation_issues == []
    await session.dispose()


@pytest.mark.asyncio
async def test_dispose_closes_transports_opened_for_the_session(db):
    session = await open_session(TEST_OWNER_ID, settings=make_settings())
    runner_client = session._runner._client
    stream_client = session._stream._client

    await session.dispose()

    assert runner_client.is_closed
    assert stream_client.is_closed


@pytest.mark.asyncio
async def test_dispose_leaves_caller_transports_open(db):
    runner = RecordingRunner()
    session = await open_session(
        TEST_OWNER_ID, runner=runner, stream=InMemoryStatusStream(), settings=make_settings()
    )

    await session.dispose()

    assert not runner.closed
