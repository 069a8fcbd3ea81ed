"""
Schema propagation: edge writes, idempotence, retry bounds, deferred
re-checks and cascades.
"""
from dataclasses import dataclass, field
from typing import List

import pytest

from shared.database.workflow_models import SchemaDirection
from workflow_engine.graph.workflow_graph import SCHEMA_WARNING_KEY, WorkflowGraph
from workflow_engine.runtime.identity import TemporaryIdentityManager
from workflow_engine.runtime.propagation import (
    PropagationOutcome,
    PropagationPolicy,
    PropagationResult,
    SchemaPropagator,
)
from workflow_engine.runtime.timers import TimerRegistry
from workflow_engine.schema.columns import schemas_equal
from workflow_engine.schema.schema_registry import SchemaRegistry
from tests.shared_data import FlakyRepository, amount_and_date_schema, amount_schema


POLICY = PropagationPolicy(max_attempts=3, base_delay=0.0, backoff_factor=2.0, attempt_timeout=1.0, recheck_delay=0.01)


@dataclass
class Harness:
    repository: FlakyRepository
    graph: WorkflowGraph = field(default_factory=WorkflowGraph)
    registry: SchemaRegistry = field(default_factory=SchemaRegistry)
    identity: TemporaryIdentityManager = field(default_factory=TemporaryIdentityManager)
    timers: TimerRegistry = field(default_factory=TimerRegistry)
    reported: List[PropagationResult] = field(default_factory=list)
    policy: PropagationPolicy = POLICY

    def __post_init__(self) -> None:
        self.propagator = SchemaPropagator(
            self.graph,
            self.registry,
            self.repository,
            self.identity,
            self.timers,
            policy=self.policy,
            on_result=self.reported.append,
        )

    @property
    def key(self) -> str:
        return self.identity.current_id

    def input_of(self, node_id: str):
        return self.registry.get_input(self.key, node_id)


async def _connected_pair(harness: Harness):
    source = harness.graph.add_node("input", "fileUpload")
    target = harness.graph.add_node("processing", "filtering")
    await harness.propagator.set_output_schema(source.id, amount_schema())
    edge = harness.graph.connect_nodes(source.id, target.id).edge
    return source, target, edge


def test_backoff_delays():
    policy = PropagationPolicy(base_delay=0.5, backoff_factor=2.0)
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_source_change_updates_target_without_touching_edge(db):
    harness = Harness(FlakyRepository())
    source, target, edge = await _connected_pair(harness)

    first = await harness.propagator.propagate_edge(source.id, target.id)
    assert first.outcome == PropagationOutcome.propagated
    assert schemas_equal(harness.input_of(target.id), amount_schema())

    edge_before = edge.model_dump()
    results = await harness.propagator.set_output_schema(source.id, amount_and_date_schema())

    assert [result.outcome for result in results] == [PropagationOutcome.propagated]
    assert schemas_equal(harness.input_of(target.id), amount_and_date_schema())
    assert harness.graph.edges == [edge]
    assert harness.graph.get_edge(edge.id).model_dump() == edge_before
    stored = await harness.repository.read_node_schema(harness.key, target.id, SchemaDirection.INPUT)
    assert schemas_equal(stored, amount_and_date_schema())


@pytest.mark.asyncio
async def test_propagating_twice_writes_once(db):
    harness = Harness(FlakyRepository())
    source, target, _ = await _connected_pair(harness)

    first = await harness.propagator.propagate_edge(source.id, target.id)
    second = await harness.propagator.propagate_edge(source.id, target.id)

    assert first.outcome == PropagationOutcome.propagated
    assert second.outcome == PropagationOutcome.unchanged
    assert len(harness.repository.input_writes) == 1
    assert schemas_equal(harness.input_of(target.id), amount_schema())


@pytest.mark.asyncio
async def test_failing_write_is_bounded_then_reported(db):
    harness = Harness(FlakyRepository(input_failures=100))
    source, target, _ = await _connected_pair(harness)

    result = await harness.propagator.propagate_edge(source.id, target.id)

    assert result.outcome == PropagationOutcome.deferred
    assert result.attempts == POLICY.max_attempts
    assert harness.repository.input_write_attempts == POLICY.max_attempts
    assert harness.input_of(target.id) is None

    await harness.timers.settle()

    # One deferred re-check, then the failure is reported
    assert harness.repository.input_write_attempts == POLICY.max_attempts + 1
    assert [report.outcome for report in harness.reported] == [PropagationOutcome.failed]
    assert harness.input_of(target.id) is None


@pytest.mark.asyncio
async def test_deferred_recheck_recovers(db):
    harness = Harness(FlakyRepository(input_failures=POLICY.max_attempts))
    source, target, _ = await _connected_pair(harness)

    result = await harness.propagator.propagate_edge(source.id, target.id)
    await harness.timers.settle()

    assert result.outcome == PropagationOutcome.deferred
    assert harness.reported[0].outcome == PropagationOutcome.recovered
    assert schemas_equal(harness.input_of(target.id), amount_schema())


@pytest.mark.asyncio
async def test_recheck_does_not_repeat_a_write_that_landed(db):
    harness = Harness(FlakyRepository(lost_acks=POLICY.max_attempts))
    source, target, _ = await _connected_pair(harness)

    await harness.propagator.propagate_edge(source.id, target.id)
    attempts_before = harness.repository.input_write_attempts
    await harness.timers.settle()

    assert harness.reported[0].outcome == PropagationOutcome.recovered
    assert harness.repository.input_write_attempts == attempts_before
    assert schemas_equal(harness.input_of(target.id), amount_schema())


@pytest.mark.asyncio
async def test_slow_writes_time_out(db):
    policy = PropagationPolicy(max_attempts=2, base_delay=0.0, attempt_timeout=0.02, recheck_delay=60.0)
    harness = Harness(FlakyRepository(write_delay=0.2), policy=policy)
    source, target, _ = await _connected_pair(harness)

    result = await harness.propagator.propagate_edge(source.id, target.id)

    assert result.outcome == PropagationOutcome.deferred
    assert "timed out" in result.error
    assert harness.propagator.cancel_pending() == 1
    await harness.timers.close()


@pytest.mark.asyncio
async def test_cancel_pending_drops_deferred_rechecks(db):
    harness = Harness(FlakyRepository(input_failures=100))
    source, target, _ = await _connected_pair(harness)

    await harness.propagator.propagate_edge(source.id, target.id)
    assert harness.propagator.cancel_pending() == 1
    await harness.timers.settle()

    assert harness.reported == []
    assert harness.repository.input_write_attempts == POLICY.max_attempts


@pytest.mark.asyncio
async def test_unknown_source_schema_is_skipped(db):
    harness = Harness(FlakyRepository())
    source = harness.graph.add_node("input", "fileUpload")
    target = harness.graph.add_node("processing", "filtering")
    harness.graph.connect_nodes(source.id, target.id)

    result = await harness.propagator.propagate_edge(source.id, target.id)

    assert result.outcome == PropagationOutcome.skipped
    assert harness.repository.input_write_attempts == 0


@pytest.mark.asyncio
async def test_cascade_reaches_every_downstream_node_and_stops_on_cycles(db):
    harness = Harness(FlakyRepository())
    graph = harness.graph
    a = graph.add_node("input", "fileUpload")
    b = graph.add_node("processing", "filtering")
    c = graph.add_node("processing", "sorting")
    d = graph.add_node("output", "outputNode")
    graph.connect_nodes(a.id, b.id)
    graph.connect_nodes(b.id, c.id)
    graph.connect_nodes(c.id, b.id)
    graph.connect_nodes(c.id, d.id)

    results = await harness.propagator.set_output_schema(a.id, amount_schema())

    flattened = [item for result in results for item in result.flatten()]
    assert {(item.source_id, item.target_id) for item in flattened} == {(a.id, b.id), (b.id, c.id), (c.id, d.id)}
    for node in (b, c, d):
        assert schemas_equal(harness.input_of(node.id), amount_schema())


@pytest.mark.asyncio
async def test_mismatch_is_reported_as_warning_and_still_written(db):
    harness = Harness(FlakyRepository())
    source = harness.graph.add_node("input", "fileUpload")
    target = harness.graph.add_node("processing", "filtering", config={"column": "region"})
    edge = harness.graph.connect_nodes(source.id, target.id).edge
    await harness.propagator.set_output_schema(source.id, amount_schema())

    assert schemas_equal(harness.input_of(target.id), amount_schema())
    assert harness.graph.get_edge(edge.id).metadata[SCHEMA_WARNING_KEY] == [
        'Column "region" does not exist in the source data'
    ]

    harness.graph.update_node_config(target.id, {"column": "amount"})
    await harness.propagator.node_reconfigured(target.id)
    assert SCHEMA_WARNING_KEY not in harness.graph.get_edge(edge.id).metadata


@pytest.mark.asyncio
async def test_removing_last_incoming_edge_clears_target_input(db):
    harness = Harness(FlakyRepository())
    source, target, edge = await _connected_pair(harness)
    await harness.propagator.propagate_edge(source.id, target.id)

    harness.graph.remove_edge(edge.id)
    await harness.propagator.edge_removed(source.id, target.id)

    assert harness.input_of(target.id) is None
    assert await harness.repository.read_node_schema(harness.key, target.id, SchemaDirection.INPUT) is None
