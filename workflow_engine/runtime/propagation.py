"""
Schema propagation along edges.

When an edge is created, or a source node's output changes, the source's
output schema becomes the target's input schema. Writes go to the durable
node-schema table first and then to the in-memory registry, inside the
identity manager's write scope so they never race a migration.

Failed writes are retried with exponential backoff; after the last attempt
one deferred re-check is scheduled. The re-check reads the durable copy
before writing so a late success of an earlier attempt is not duplicated.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Set

from shared.database.workflow_models import SchemaDirection
from workflow_engine.errors import SchemaPropagationError, SchemaWarning
from workflow_engine.graph.workflow_graph import WorkflowGraph
from workflow_engine.runtime.identity import TemporaryIdentityManager
from workflow_engine.runtime.timers import TimerRegistry
from workflow_engine.schema.columns import check_compatibility, infer_output_schema, schemas_equal
from workflow_engine.schema.models import Schema
from workflow_engine.schema.schema_registry import SchemaRegistry
from workflow_engine.storage.repository import WorkflowRepository

logger = logging.getLogger(__name__)

RECHECK_TIMER_PREFIX = "propagation:"


@dataclass(frozen=True)
class PropagationPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    backoff_factor: float = 2.0
    attempt_timeout: float = 5.0
    recheck_delay: float = 10.0

    @classmethod
    def from_config(cls, settings) -> "PropagationPolicy":
        return cls(
            max_attempts=settings.propagation_max_attempts,
            base_delay=settings.propagation_base_delay_seconds,
            backoff_factor=settings.propagation_backoff_factor,
            attempt_timeout=settings.propagation_attempt_timeout_seconds,
            recheck_delay=settings.propagation_recheck_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based)."""
        return self.base_delay * self.backoff_factor ** (attempt - 1)


class PropagationOutcome(str, Enum):
    propagated = "propagated"
    unchanged = "unchanged"
    deferred = "deferred"
    recovered = "recovered"
    failed = "failed"
    skipped = "skipped"


@dataclass
class PropagationResult:
    source_id: str
    target_id: str
    outcome: PropagationOutcome
    attempts: int = 0
    schema: Optional[Schema] = None
    warning: Optional[SchemaWarning] = None
    error: Optional[str] = None
    cascaded: List["PropagationResult"] = field(default_factory=list)

    def flatten(self) -> List["PropagationResult"]:
        results = [self]
        for child in self.cascaded:
            results.extend(child.flatten())
        return results


ResultListener = Callable[[PropagationResult], None]


class SchemaPropagator:
    def __init__(
        self,
        graph: WorkflowGraph,
        registry: SchemaRegistry,
        repository: WorkflowRepository,
        identity: TemporaryIdentityManager,
        timers: TimerRegistry,
        policy: Optional[PropagationPolicy] = None,
        on_result: Optional[ResultListener] = None,
    ) -> None:
        self.graph = graph
        self.registry = registry
        self.repository = repository
        self.identity = identity
        self.timers = timers
        self.policy = policy or PropagationPolicy()
        self.on_result = on_result

    # ------------------------------------------------------------------
    # Schema lookups
    # ------------------------------------------------------------------
    def output_schema_of(self, node_id: str) -> Optional[Schema]:
        key = self.identity.current_id
        stored = self.registry.get_output(key, node_id)
        if stored is not None:
            return stored
        node = self.graph.get_node(node_id)
        return infer_output_schema(node, self.registry.get_input(key, node_id))

    def _warning_for(self, source_id: str, target_id: str, schema: Schema) -> Optional[SchemaWarning]:
        problems = check_compatibility(schema, self.graph.get_node(target_id))
        for edge in self.graph.edges_to(target_id):
            if edge.source_node_id == source_id:
                self.graph.set_edge_warning(edge.id, problems)
        if not problems:
            return None
        return SchemaWarning(problems, source_id=source_id, target_id=target_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def _write_input(self, target_id: str, schema: Schema) -> None:
        async with self.identity.write_scope() as key:
            await self.repository.write_node_schema(key, target_id, SchemaDirection.INPUT, schema)
            self.registry.set_input(key, target_id, schema)

    async def _write_output(self, node_id: str, schema: Schema) -> None:
        async with self.identity.write_scope() as key:
            self.registry.set_output(key, node_id, schema)
            try:
                await asyncio.wait_for(
                    self.repository.write_node_schema(key, node_id, SchemaDirection.OUTPUT, schema),
                    timeout=self.policy.attempt_timeout,
                )
            except Exception as exc:
                # The cache stays authoritative; the durable copy is refreshed on the next change
                logger.warning("Could not store output schema of %s: %s", node_id, exc)

    async def _attempt_write(self, target_id: str, schema: Schema) -> None:
        try:
            await asyncio.wait_for(self._write_input(target_id, schema), timeout=self.policy.attempt_timeout)
        except asyncio.TimeoutError as exc:
            raise SchemaPropagationError(
                f"Writing input schema of '{target_id}' timed out after {self.policy.attempt_timeout}s"
            ) from exc

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------
    async def propagate_edge(self, source_id: str, target_id: str) -> PropagationResult:
        return await self._propagate(source_id, target_id, {source_id})

    async def propagate_from(self, node_id: str) -> List[PropagationResult]:
        """Push ``node_id``'s output to each direct downstream neighbour."""
        visited: Set[str] = {node_id}
        results = []
        for target_id in self.graph.downstream(node_id):
            results.append(await self._propagate(node_id, target_id, visited))
        return results

    async def _propagate(self, source_id: str, target_id: str, visited: Set[str]) -> PropagationResult:
        if not self.graph.has_node(source_id) or not self.graph.has_node(target_id):
            return PropagationResult(source_id, target_id, PropagationOutcome.skipped)

        desired = self.output_schema_of(source_id)
        if desired is None:
            return PropagationResult(source_id, target_id, PropagationOutcome.skipped)

        warning = self._warning_for(source_id, target_id, desired)
        current = self.registry.get_input(self.identity.current_id, target_id)
        if current is not None and schemas_equal(current, desired):
            return PropagationResult(
                source_id, target_id, PropagationOutcome.unchanged, schema=desired, warning=warning
            )

        last_error: Optional[Exception] = None
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                await self._attempt_write(target_id, desired)
            except Exception as exc:
                last_error = exc
                logger.info(
                    "Schema propagation %s -> %s failed (attempt %s/%s): %s",
                    source_id,
                    target_id,
                    attempt,
                    self.policy.max_attempts,
                    exc,
                )
                if attempt < self.policy.max_attempts:
                    await asyncio.sleep(self.policy.delay_for(attempt))
                continue

            result = PropagationResult(
                source_id,
                target_id,
                PropagationOutcome.propagated,
                attempts=attempt,
                schema=desired,
                warning=warning,
            )
            result.cascaded = await self._cascade(target_id, visited)
            return result

        logger.warning(
            "Schema propagation %s -> %s exhausted %s attempts; re-checking in %ss",
            source_id,
            target_id,
            self.policy.max_attempts,
            self.policy.recheck_delay,
        )
        self.timers.schedule(
            self.identity.current_id,
            f"{RECHECK_TIMER_PREFIX}{source_id}->{target_id}",
            self.policy.recheck_delay,
            lambda: self._recheck(source_id, target_id),
        )
        return PropagationResult(
            source_id,
            target_id,
            PropagationOutcome.deferred,
            attempts=self.policy.max_attempts,
            schema=desired,
            warning=warning,
            error=str(last_error),
        )

    async def _recheck(self, source_id: str, target_id: str) -> PropagationResult:
        result = await self._recheck_once(source_id, target_id)
        if result.outcome == PropagationOutcome.failed:
            logger.warning(
                "Schema propagation %s -> %s failed after deferred re-check: %s",
                source_id,
                target_id,
                result.error,
            )
        if self.on_result is not None:
            self.on_result(result)
        return result

    async def _recheck_once(self, source_id: str, target_id: str) -> PropagationResult:
        if not self.graph.has_node(source_id) or not self.graph.has_node(target_id):
            return PropagationResult(source_id, target_id, PropagationOutcome.skipped)
        desired = self.output_schema_of(source_id)
        if desired is None:
            return PropagationResult(source_id, target_id, PropagationOutcome.skipped)

        try:
            async with self.identity.write_scope() as key:
                stored = await asyncio.wait_for(
                    self.repository.read_node_schema(key, target_id, SchemaDirection.INPUT),
                    timeout=self.policy.attempt_timeout,
                )
                if stored is None or not schemas_equal(stored, desired):
                    await asyncio.wait_for(
                        self.repository.write_node_schema(key, target_id, SchemaDirection.INPUT, desired),
                        timeout=self.policy.attempt_timeout,
                    )
                self.registry.set_input(key, target_id, desired)
        except Exception as exc:
            return PropagationResult(
                source_id,
                target_id,
                PropagationOutcome.failed,
                attempts=1,
                schema=desired,
                error=str(exc) or type(exc).__name__,
            )

        result = PropagationResult(
            source_id, target_id, PropagationOutcome.recovered, attempts=1, schema=desired
        )
        result.cascaded = await self._cascade(target_id, {source_id})
        return result

    async def _cascade(self, node_id: str, visited: Set[str]) -> List[PropagationResult]:
        """Re-infer ``node_id``'s output and continue downstream if it changed."""
        visited = visited | {node_id}
        key = self.identity.current_id
        node = self.graph.get_node(node_id)
        inferred = infer_output_schema(node, self.registry.get_input(key, node_id))
        if inferred is None:
            return []
        if schemas_equal(self.registry.get_output(key, node_id), inferred):
            return []

        await self._write_output(node_id, inferred)
        results = []
        for target_id in self.graph.downstream(node_id):
            if target_id in visited:
                continue
            results.append(await self._propagate(node_id, target_id, visited))
        return results

    # ------------------------------------------------------------------
    # Reconfiguration hooks
    # ------------------------------------------------------------------
    async def set_output_schema(self, node_id: str, schema: Schema) -> List[PropagationResult]:
        """Record an externally discovered output schema and push it downstream."""
        self.graph.get_node(node_id)
        if schemas_equal(self.registry.get_output(self.identity.current_id, node_id), schema):
            return []
        await self._write_output(node_id, schema)
        return await self.propagate_from(node_id)

    async def node_reconfigured(self, node_id: str) -> List[PropagationResult]:
        """Re-check incoming edges and re-infer the output after a config change."""
        key = self.identity.current_id
        for edge in self.graph.edges_to(node_id):
            source_schema = self.output_schema_of(edge.source_node_id)
            self.graph.set_edge_warning(edge.id, check_compatibility(source_schema, self.graph.get_node(node_id)))

        node = self.graph.get_node(node_id)
        inferred = infer_output_schema(node, self.registry.get_input(key, node_id))
        if inferred is None or schemas_equal(self.registry.get_output(key, node_id), inferred):
            return []
        await self._write_output(node_id, inferred)
        return await self.propagate_from(node_id)

    async def edge_removed(self, source_id: str, target_id: str) -> None:
        """Forget the target's input when no edge feeds it any more."""
        if not self.graph.has_node(target_id) or self.graph.edges_to(target_id):
            return
        self.timers.cancel(self.identity.current_id, f"{RECHECK_TIMER_PREFIX}{source_id}->{target_id}")
        async with self.identity.write_scope() as key:
            self.registry.clear_input(key, target_id)
            await self.repository.delete_node_schemas(key, target_id, SchemaDirection.INPUT)

    async def node_removed(self, node_id: str) -> None:
        key = self.identity.current_id
        for name in self.timers.pending(key):
            if name.startswith(RECHECK_TIMER_PREFIX) and node_id in name[len(RECHECK_TIMER_PREFIX):].split("->"):
                self.timers.cancel(key, name)
        async with self.identity.write_scope() as key:
            self.registry.remove_node(key, node_id)
            await self.repository.delete_node_schemas(key, node_id)

    def cancel_pending(self) -> int:
        return self.timers.cancel_prefix(self.identity.current_id, RECHECK_TIMER_PREFIX)
