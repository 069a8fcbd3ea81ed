"""
Persistence for workflows, edge rows, node schemas and run records.

Edge and schema rows are keyed by the workflow's *current* id as a plain
string, so they can be written while the workflow is still temporary and
re-keyed once it has a persistent id.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from tortoise.exceptions import DoesNotExist, IntegrityError
from tortoise.transactions import in_transaction

from shared.database.workflow_models import (
    NodeSchemaRecord,
    SchemaDirection,
    WorkflowEdgeRecord,
    WorkflowRecord,
    WorkflowRunRecord,
    make_workflow_public_id,
    parse_workflow_public_id,
)
from workflow_engine.errors import WorkflowNotFoundError, WorkflowSaveError
from workflow_engine.schema.columns import coerce_schema, dump_schema
from workflow_engine.schema.models import (
    ExecutionRun,
    Schema,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)

logger = logging.getLogger(__name__)

_HANDLES_KEY = "_handles"
_NAME_PROBE_LIMIT = 1000
_CREATE_ATTEMPTS = 3


class WorkflowRepository(ABC):
    """Storage interface used by sessions, propagation and identity migration."""

    # -- workflow records ------------------------------------------------
    @abstractmethod
    async def name_exists(self, owner_id: str, name: str) -> bool: ...

    async def unique_name(self, owner_id: str, base: str) -> str:
        """First free name among ``base``, ``base1``, ``base2``, ..."""
        if not await self.name_exists(owner_id, base):
            return base
        for suffix in range(1, _NAME_PROBE_LIMIT):
            candidate = f"{base}{suffix}"
            if not await self.name_exists(owner_id, candidate):
                return candidate
        raise WorkflowSaveError(f"Could not find a free name derived from '{base}'")

    @abstractmethod
    async def create_workflow(self, owner_id: str, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert a new record; returns the definition with its persistent id and final name."""

    @abstractmethod
    async def update_workflow(self, owner_id: str, definition: WorkflowDefinition) -> None: ...

    @abstractmethod
    async def load_workflow(self, owner_id: str, workflow_id: str) -> WorkflowDefinition: ...

    # -- edge rows -------------------------------------------------------
    @abstractmethod
    async def replace_edges(self, workflow_key: str, edges: Iterable[WorkflowEdge]) -> None: ...

    @abstractmethod
    async def upsert_edge(self, workflow_key: str, edge: WorkflowEdge) -> None: ...

    @abstractmethod
    async def delete_edge(self, workflow_key: str, edge_id: str) -> None: ...

    @abstractmethod
    async def list_edges(self, workflow_key: str) -> List[WorkflowEdge]: ...

    @abstractmethod
    async def rekey_edges(self, old_key: str, new_key: str) -> int: ...

    # -- node schemas ----------------------------------------------------
    @abstractmethod
    async def write_node_schema(
        self, workflow_key: str, node_id: str, direction: SchemaDirection, schema: Schema
    ) -> None: ...

    @abstractmethod
    async def read_node_schema(
        self, workflow_key: str, node_id: str, direction: SchemaDirection
    ) -> Optional[Schema]: ...

    @abstractmethod
    async def delete_node_schemas(
        self, workflow_key: str, node_id: str, direction: Optional[SchemaDirection] = None
    ) -> None: ...

    @abstractmethod
    async def list_node_schemas(self, workflow_key: str) -> Dict[str, Dict[SchemaDirection, Schema]]: ...

    @abstractmethod
    async def rekey_node_schemas(self, old_key: str, new_key: str) -> int: ...

    # -- runs ------------------------------------------------------------
    @abstractmethod
    async def record_run(self, run: ExecutionRun) -> None: ...

    @abstractmethod
    async def update_run(self, run: ExecutionRun) -> None: ...


def _edge_metadata(edge: WorkflowEdge) -> Dict:
    metadata = dict(edge.metadata)
    handles = {
        key: value
        for key, value in (
            ("source_handle", edge.source_handle),
            ("target_handle", edge.target_handle),
            ("label", edge.label),
        )
        if value is not None
    }
    if handles:
        metadata[_HANDLES_KEY] = handles
    return metadata


def _edge_from_record(record: WorkflowEdgeRecord) -> WorkflowEdge:
    metadata = dict(record.metadata or {})
    handles = metadata.pop(_HANDLES_KEY, {}) or {}
    return WorkflowEdge(
        id=record.edge_id,
        source_node_id=record.source_node_id,
        target_node_id=record.target_node_id,
        source_handle=handles.get("source_handle"),
        target_handle=handles.get("target_handle"),
        label=handles.get("label"),
        edge_type=record.edge_type,
        metadata=metadata,
    )


class TortoiseWorkflowRepository(WorkflowRepository):
    """Repository backed by the Tortoise models in ``shared.database``."""

    async def _get_record(self, owner_id: str, workflow_id: str) -> WorkflowRecord:
        try:
            pk = parse_workflow_public_id(workflow_id)
        except ValueError:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found") from None
        try:
            return await WorkflowRecord.get(id=pk, owner_id=owner_id)
        except DoesNotExist:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found") from None

    async def name_exists(self, owner_id: str, name: str) -> bool:
        return await WorkflowRecord.filter(owner_id=owner_id, name=name).exists()

    async def create_workflow(self, owner_id: str, definition: WorkflowDefinition) -> WorkflowDefinition:
        last_error: Optional[Exception] = None
        for _ in range(_CREATE_ATTEMPTS):
            name = await self.unique_name(owner_id, definition.name)
            try:
                record = await WorkflowRecord.create(
                    owner_id=owner_id,
                    name=name,
                    description=definition.description,
                    definition=definition.graph_payload(),
                )
            except IntegrityError as exc:
                # Another writer took the name between probe and insert
                last_error = exc
                continue
            return definition.model_copy(update={"id": record.workflow_id, "name": name})
        raise WorkflowSaveError(f"Could not create workflow '{definition.name}': {last_error}")

    async def update_workflow(self, owner_id: str, definition: WorkflowDefinition) -> None:
        record = await self._get_record(owner_id, definition.id)
        record.name = definition.name
        record.description = definition.description
        record.definition = definition.graph_payload()
        record.version += 1
        try:
            await record.save()
        except IntegrityError as exc:
            raise WorkflowSaveError(f"Workflow name '{definition.name}' is already taken") from exc

    async def load_workflow(self, owner_id: str, workflow_id: str) -> WorkflowDefinition:
        record = await self._get_record(owner_id, workflow_id)
        payload = record.definition or {}
        return WorkflowDefinition(
            id=make_workflow_public_id(record.id),
            name=record.name,
            description=record.description or "",
            nodes=[WorkflowNode.model_validate(item) for item in payload.get("nodes", [])],
            edges=[WorkflowEdge.model_validate(item) for item in payload.get("edges", [])],
        )

    async def replace_edges(self, workflow_key: str, edges: Iterable[WorkflowEdge]) -> None:
        rows = [
            WorkflowEdgeRecord(
                workflow_id=workflow_key,
                edge_id=edge.id,
                source_node_id=edge.source_node_id,
                target_node_id=edge.target_node_id,
                edge_type=edge.edge_type,
                metadata=_edge_metadata(edge),
            )
            for edge in edges
        ]
        async with in_transaction() as conn:
            await WorkflowEdgeRecord.filter(workflow_id=workflow_key).using_db(conn).delete()
            if rows:
                await WorkflowEdgeRecord.bulk_create(rows, using_db=conn)

    async def upsert_edge(self, workflow_key: str, edge: WorkflowEdge) -> None:
        await WorkflowEdgeRecord.update_or_create(
            workflow_id=workflow_key,
            edge_id=edge.id,
            defaults={
                "source_node_id": edge.source_node_id,
                "target_node_id": edge.target_node_id,
                "edge_type": edge.edge_type,
                "metadata": _edge_metadata(edge),
            },
        )

    async def delete_edge(self, workflow_key: str, edge_id: str) -> None:
        await WorkflowEdgeRecord.filter(workflow_id=workflow_key, edge_id=edge_id).delete()

    async def list_edges(self, workflow_key: str) -> List[WorkflowEdge]:
        records = await WorkflowEdgeRecord.filter(workflow_id=workflow_key).order_by("id")
        return [_edge_from_record(record) for record in records]

    async def rekey_edges(self, old_key: str, new_key: str) -> int:
        return await WorkflowEdgeRecord.filter(workflow_id=old_key).update(workflow_id=new_key)

    async def write_node_schema(
        self, workflow_key: str, node_id: str, direction: SchemaDirection, schema: Schema
    ) -> None:
        await NodeSchemaRecord.update_or_create(
            workflow_id=workflow_key,
            node_id=node_id,
            direction=direction,
            defaults={"columns": dump_schema(schema)},
        )

    async def read_node_schema(
        self, workflow_key: str, node_id: str, direction: SchemaDirection
    ) -> Optional[Schema]:
        record = await NodeSchemaRecord.get_or_none(
            workflow_id=workflow_key, node_id=node_id, direction=direction
        )
        if record is None:
            return None
        return coerce_schema(record.columns or [])

    async def delete_node_schemas(
        self, workflow_key: str, node_id: str, direction: Optional[SchemaDirection] = None
    ) -> None:
        query = NodeSchemaRecord.filter(workflow_id=workflow_key, node_id=node_id)
        if direction is not None:
            query = query.filter(direction=direction)
        await query.delete()

    async def list_node_schemas(self, workflow_key: str) -> Dict[str, Dict[SchemaDirection, Schema]]:
        result: Dict[str, Dict[SchemaDirection, Schema]] = {}
        for record in await NodeSchemaRecord.filter(workflow_id=workflow_key):
            result.setdefault(record.node_id, {})[SchemaDirection(record.direction)] = coerce_schema(
                record.columns or []
            )
        return result

    async def rekey_node_schemas(self, old_key: str, new_key: str) -> int:
        return await NodeSchemaRecord.filter(workflow_id=old_key).update(workflow_id=new_key)

    async def record_run(self, run: ExecutionRun) -> None:
        await WorkflowRunRecord.create(
            run_id=run.id,
            workflow_id=parse_workflow_public_id(run.workflow_id),
            status=run.status.value,
            error=run.error,
            started_at=run.started_at,
            last_updated_at=run.last_updated_at,
            finished_at=run.last_updated_at if run.is_terminal else None,
        )

    async def update_run(self, run: ExecutionRun) -> None:
        updated = await WorkflowRunRecord.filter(run_id=run.id).update(
            status=run.status.value,
            error=run.error,
            last_updated_at=run.last_updated_at,
            finished_at=run.last_updated_at if run.is_terminal else None,
        )
        if not updated:
            logger.warning("Run record %s missing; nothing updated", run.id)
