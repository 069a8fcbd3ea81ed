"""
One editing session per open workflow.

The session ties the graph, schema propagation, identity migration, the
autosave timer and run tracking together, and owns every background task
they start so ``dispose()`` can stop them all.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from shared.config import CanvasflowConfig, config as default_config
from shared.database.workflow_models import SchemaDirection
from workflow_engine.errors import ExecutionStartError, WorkflowEngineError, WorkflowSaveError
from workflow_engine.graph.workflow_graph import Connection, WorkflowGraph
from workflow_engine.registry.node_catalog import NodeConfigStore
from workflow_engine.runtime.execution import ExecutionCoordinator
from workflow_engine.runtime.identity import MigrationReport, TemporaryIdentityManager
from workflow_engine.runtime.propagation import (
    PropagationOutcome,
    PropagationPolicy,
    PropagationResult,
    SchemaPropagator,
)
from workflow_engine.runtime.runner import RunnerClient
from workflow_engine.runtime.status_stream import StatusStream
from workflow_engine.runtime.timers import DebouncedTimer, TimerRegistry
from workflow_engine.schema.columns import coerce_schema
from workflow_engine.schema.models import (
    ExecutionRun,
    NodeCategory,
    SaveState,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    is_temporary_id,
    utcnow,
)
from workflow_engine.schema.schema_registry import SchemaRegistry
from workflow_engine.storage.repository import WorkflowRepository

logger = logging.getLogger(__name__)

AUTOSAVE_TIMER = "autosave"

# Outcomes that leave a target input out of date until a later propagation succeeds
OUTSTANDING_OUTCOMES = frozenset({PropagationOutcome.deferred, PropagationOutcome.failed})

MigrationListener = Callable[["WorkflowSession"], None]


class WorkflowSession:
    def __init__(
        self,
        owner_id: str,
        *,
        repository: WorkflowRepository,
        runner: RunnerClient,
        stream: StatusStream,
        workflow_id: Optional[str] = None,
        name: Optional[str] = None,
        description: str = "",
        node_store: Optional[NodeConfigStore] = None,
        settings: Optional[CanvasflowConfig] = None,
        registry: Optional[SchemaRegistry] = None,
        owned_transports: Iterable[Any] = (),
        on_migrated: Optional[MigrationListener] = None,
    ) -> None:
        self.owner_id = owner_id
        self.repository = repository
        self.settings = settings or default_config
        self.node_store = node_store
        self.registry = registry or SchemaRegistry()
        self.name = name or self.settings.default_workflow_name
        self.description = description

        self._requested_id = workflow_id
        self._runner = runner
        self._stream = stream
        self._owned_transports = list(owned_transports)
        self.on_migrated = on_migrated

        self.graph = WorkflowGraph(node_store)
        self.timers = TimerRegistry()
        self.identity: Optional[TemporaryIdentityManager] = None
        self.propagator: Optional[SchemaPropagator] = None
        self.coordinator: Optional[ExecutionCoordinator] = None
        self._autosave: Optional[DebouncedTimer] = None

        self.save_state = SaveState.idle
        self.last_error: Optional[str] = None
        self.last_saved_at: Optional[datetime] = None
        self.migration_report: Optional[MigrationReport] = None
        self._propagation_issues: Dict[Tuple[str, str], PropagationResult] = {}
        self._revision = 0
        self._save_lock = asyncio.Lock()
        self._initialized = False
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def init(self) -> "WorkflowSession":
        if self._initialized:
            return self

        requested = self._requested_id
        if requested and not is_temporary_id(requested):
            definition = await self.repository.load_workflow(self.owner_id, requested)
            self.graph = WorkflowGraph.from_definition(definition, self.node_store)
            self.name = definition.name
            self.description = definition.description
            self.identity = self._make_identity(definition.id)
            for node_id, schemas in (await self.repository.list_node_schemas(definition.id)).items():
                if SchemaDirection.INPUT in schemas:
                    self.registry.set_input(definition.id, node_id, schemas[SchemaDirection.INPUT])
                if SchemaDirection.OUTPUT in schemas:
                    self.registry.set_output(definition.id, node_id, schemas[SchemaDirection.OUTPUT])
            self.save_state = SaveState.saved
        else:
            self.identity = self._make_identity(requested)

        self.identity.register_step("schema_cache", self._rekey_schema_cache)
        self.identity.register_step("node_schemas", self.repository.rekey_node_schemas)
        self.identity.register_step("edges", self.repository.rekey_edges)
        self.identity.register_step("timers", self._rekey_timers)

        self.propagator = SchemaPropagator(
            self.graph,
            self.registry,
            self.repository,
            self.identity,
            self.timers,
            policy=PropagationPolicy.from_config(self.settings),
            on_result=self._record_result,
        )
        self.coordinator = ExecutionCoordinator.from_config(
            self._runner,
            self._stream,
            self.settings,
            on_start=self._record_run,
            on_update=self.repository.update_run,
        )
        self._autosave = DebouncedTimer(
            self.timers,
            AUTOSAVE_TIMER,
            self.settings.autosave_quiet_period_seconds,
            self._run_autosave,
            key=lambda: self.identity.current_id,
        )
        self._initialized = True
        logger.info("Opened workflow session %s", self.workflow_id)
        return self

    def _make_identity(self, workflow_id: Optional[str]) -> TemporaryIdentityManager:
        return TemporaryIdentityManager(
            workflow_id,
            step_attempts=self.settings.migration_step_attempts,
        )

    async def dispose(self) -> None:
        """Cancel timers and retries and stop watching runs. Remote runs are not cancelled."""
        if self._disposed:
            return
        self._disposed = True
        if self._initialized:
            self._autosave.cancel()
            self.propagator.cancel_pending()
            await self.coordinator.close()
        await self.timers.close()
        for transport in self._owned_transports:
            await transport.close()
        logger.info("Closed workflow session %s", self.workflow_id if self.identity else "<uninitialized>")

    def _require_ready(self) -> None:
        if not self._initialized:
            raise RuntimeError("Session is not initialized; call init() first")
        if self._disposed:
            raise RuntimeError("Session has been disposed")

    @property
    def workflow_id(self) -> str:
        return self.identity.current_id

    @property
    def is_temporary(self) -> bool:
        return self.identity.is_temporary

    @property
    def autosave_pending(self) -> bool:
        return self._autosave is not None and self._autosave.pending

    def definition(self) -> WorkflowDefinition:
        return self.graph.to_definition(self.workflow_id, self.name, self.description)

    # ------------------------------------------------------------------
    # Migration steps
    # ------------------------------------------------------------------
    async def _rekey_schema_cache(self, old_key: str, new_key: str) -> int:
        return self.registry.rekey(old_key, new_key)

    async def _rekey_timers(self, old_key: str, new_key: str) -> int:
        return self.timers.rekey(old_key, new_key)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------
    def _record_result(self, result: PropagationResult) -> None:
        for item in result.flatten():
            key = (item.source_id, item.target_id)
            if item.outcome in OUTSTANDING_OUTCOMES:
                self._propagation_issues[key] = item
            else:
                self._propagation_issues.pop(key, None)

    def _forget_issues(self, node_id: str, target_id: Optional[str] = None) -> None:
        for source, target in list(self._propagation_issues):
            if target_id is None and node_id in (source, target):
                del self._propagation_issues[(source, target)]
            elif (source, target) == (node_id, target_id):
                del self._propagation_issues[(source, target)]

    @property
    def propagation_issues(self) -> List[PropagationResult]:
        """Propagations still deferred, or failed after their re-check."""
        return list(self._propagation_issues.values())

    async def _propagate(self, work: Awaitable[Any]) -> None:
        try:
            outcome = await work
        except WorkflowEngineError as exc:
            logger.warning("Schema propagation in %s failed: %s", self.workflow_id, exc)
            return
        except Exception:
            logger.exception("Unexpected error during schema propagation in %s", self.workflow_id)
            return
        if outcome is None:
            return
        results = outcome if isinstance(outcome, list) else [outcome]
        for result in results:
            self._record_result(result)

    def _spawn_propagation(self, work: Awaitable[Any]) -> None:
        self.timers.spawn(self._propagate(work), name=f"propagation:{self.workflow_id}")

    def _touch(self) -> None:
        self._revision += 1
        if self.save_state != SaveState.saving:
            self.save_state = SaveState.idle
        self._autosave.trigger()

    async def _write_edge_row(self, edge: WorkflowEdge) -> None:
        try:
            async with self.identity.write_scope() as key:
                await self.repository.upsert_edge(key, edge)
        except Exception as exc:
            # The definition stays canonical; the next save rewrites the edge table
            logger.warning("Could not record edge %s: %s", edge.id, exc)

    async def _delete_edge_row(self, edge_id: str) -> None:
        try:
            async with self.identity.write_scope() as key:
                await self.repository.delete_edge(key, edge_id)
        except Exception as exc:
            logger.warning("Could not delete edge row %s: %s", edge_id, exc)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------
    async def add_node(
        self,
        category: NodeCategory | str,
        component_type: str,
        label: Optional[str] = None,
        position: Optional[Dict[str, float]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> WorkflowNode:
        self._require_ready()
        node = self.graph.add_node(category, component_type, label=label, position=position, config=config)
        self._spawn_propagation(self.propagator.node_reconfigured(node.id))
        self._touch()
        return node

    async def remove_node(self, node_id: str) -> List[WorkflowEdge]:
        self._require_ready()
        removed = self.graph.remove_node(node_id)
        self._forget_issues(node_id)
        for edge in removed:
            await self._delete_edge_row(edge.id)
        await self.propagator.node_removed(node_id)
        for edge in removed:
            if edge.source_node_id == node_id:
                self._spawn_propagation(self.propagator.edge_removed(edge.source_node_id, edge.target_node_id))
        self._touch()
        return removed

    async def update_node_config(self, node_id: str, patch: Dict[str, Any]) -> WorkflowNode:
        self._require_ready()
        node = self.graph.update_node_config(node_id, patch)
        self._spawn_propagation(self.propagator.node_reconfigured(node_id))
        self._touch()
        return node

    async def connect(
        self,
        source_id: str,
        target_id: str,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
    ) -> Connection:
        self._require_ready()
        source_schema = self.propagator.output_schema_of(source_id) if self.graph.has_node(source_id) else None
        connection = self.graph.connect_nodes(
            source_id,
            target_id,
            source_handle=source_handle,
            target_handle=target_handle,
            source_schema=source_schema,
        )
        await self._write_edge_row(connection.edge)
        self._spawn_propagation(self.propagator.propagate_edge(source_id, target_id))
        self._touch()
        return connection

    async def disconnect(self, edge_id: str) -> WorkflowEdge:
        self._require_ready()
        edge = self.graph.remove_edge(edge_id)
        self._forget_issues(edge.source_node_id, edge.target_node_id)
        await self._delete_edge_row(edge_id)
        self._spawn_propagation(self.propagator.edge_removed(edge.source_node_id, edge.target_node_id))
        self._touch()
        return edge

    async def set_node_output_schema(self, node_id: str, schema: Iterable[Any]) -> List[PropagationResult]:
        """Feed an externally discovered output schema (e.g. a processed upload) into the cascade."""
        self._require_ready()
        results = await self.propagator.set_output_schema(node_id, coerce_schema(schema))
        for result in results:
            self._record_result(result)
        self._touch()
        return results

    def rename(self, name: Optional[str] = None, description: Optional[str] = None) -> None:
        self._require_ready()
        if name is not None:
            self.name = name
        if description is not None:
            self.description = description
        self._touch()

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------
    async def save(self) -> WorkflowDefinition:
        """
        Persist the workflow.

        The first save creates the record under a name unique for the owner
        and migrates everything recorded under the temporary id. A partial
        migration is kept on ``migration_report`` and does not fail the save.
        """
        self._require_ready()
        async with self._save_lock:
            self.save_state = SaveState.saving
            revision = self._revision
            try:
                definition = self.definition()
                if self.identity.is_temporary:
                    created = await self.repository.create_workflow(self.owner_id, definition)
                    self.name = created.name
                    self.migration_report = await self.identity.migrate(created.id)
                    if self.on_migrated is not None:
                        self.on_migrated(self)
                    definition = self.definition()
                else:
                    await self.repository.update_workflow(self.owner_id, definition)

                async with self.identity.write_scope() as key:
                    await self.repository.replace_edges(key, self.graph.edges)
            except Exception as exc:
                self.save_state = SaveState.failed
                self.last_error = str(exc) or type(exc).__name__
                logger.warning("Saving workflow %s failed: %s", self.workflow_id, self.last_error)
                if isinstance(exc, WorkflowSaveError):
                    raise
                raise WorkflowSaveError(f"Could not save workflow: {self.last_error}") from exc

            # Edits made while saving are not part of this snapshot
            self.save_state = SaveState.saved if self._revision == revision else SaveState.idle
            self.last_error = None
            self.last_saved_at = utcnow()
            logger.info("Saved workflow %s (%s)", definition.id, definition.name)
            return definition

    async def _run_autosave(self) -> None:
        if self._disposed:
            return
        try:
            await self.save()
        except WorkflowSaveError:
            # State is already ``failed``; the next edit schedules another attempt
            pass

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------
    async def _record_run(self, run: ExecutionRun) -> None:
        await self.repository.record_run(run)

    async def run(self) -> ExecutionRun:
        self._require_ready()
        self._autosave.cancel()
        try:
            await self.save()
        except WorkflowSaveError as exc:
            raise ExecutionStartError(f"Workflow could not be saved before running: {exc}") from exc
        return await self.coordinator.start_run(self.workflow_id)

    def get_run(self, run_id: str) -> ExecutionRun:
        self._require_ready()
        return self.coordinator.get_run(run_id)

    async def settle(self, autosave: bool = False) -> None:
        """Wait for outstanding propagation and deferred re-checks, and the pending autosave if asked."""
        await self.timers.settle(exclude=() if autosave else (AUTOSAVE_TIMER,))
