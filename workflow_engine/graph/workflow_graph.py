"""
In-memory workflow graph with structural validation.

Mutations are synchronous and never touch storage; the session layer
mirrors them into the repository and kicks off schema propagation.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from workflow_engine.errors import (
    EdgeNotFoundError,
    InvalidConnection,
    NodeNotFoundError,
    SchemaWarning,
)
from workflow_engine.registry.node_catalog import NodeConfigStore, get_node_config_store
from workflow_engine.schema.columns import check_compatibility
from workflow_engine.schema.models import (
    NodeCategory,
    SchemaColumn,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)

logger = logging.getLogger(__name__)

FIRST_NODE_POSITION = {"x": 100.0, "y": 100.0}
HORIZONTAL_SPACING = 350.0
SCHEMA_WARNING_KEY = "schema_warning"


@dataclass
class Connection:
    edge: WorkflowEdge
    warning: Optional[SchemaWarning] = None


class WorkflowGraph:
    def __init__(self, node_store: Optional[NodeConfigStore] = None) -> None:
        self._store = node_store or get_node_config_store()
        self._nodes: Dict[str, WorkflowNode] = {}
        self._edges: Dict[str, WorkflowEdge] = {}

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    @property
    def nodes(self) -> List[WorkflowNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> List[WorkflowEdge]:
        return list(self._edges.values())

    def _next_position(self) -> Dict[str, float]:
        if not self._nodes:
            return dict(FIRST_NODE_POSITION)
        rightmost = max(self._nodes.values(), key=lambda node: node.position.get("x", 0.0))
        return {
            "x": rightmost.position.get("x", 0.0) + HORIZONTAL_SPACING,
            "y": rightmost.position.get("y", FIRST_NODE_POSITION["y"]),
        }

    def add_node(
        self,
        category: NodeCategory | str,
        component_type: str,
        label: Optional[str] = None,
        position: Optional[Dict[str, float]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> WorkflowNode:
        """
        Place a new node of a catalogued type.

        The node starts from a fresh copy of the type's default config;
        ``config`` (if given) is merged on top of it.
        """
        definition = self._store.get(category, component_type)
        node_config = definition.make_config()
        if config:
            node_config.update(copy.deepcopy(config))

        node = WorkflowNode(
            id=f"{component_type}-{uuid.uuid4().hex[:12]}",
            category=definition.category,
            component_type=component_type,
            label=label or definition.title,
            position=dict(position) if position else self._next_position(),
            config=node_config,
        )
        self._nodes[node.id] = node
        return node

    def get_node(self, node_id: str) -> WorkflowNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(f"Node '{node_id}' not found") from None

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def remove_node(self, node_id: str) -> List[WorkflowEdge]:
        """Remove a node and every edge referencing it; returns the removed edges."""
        self.get_node(node_id)
        removed = [
            edge
            for edge in self._edges.values()
            if edge.source_node_id == node_id or edge.target_node_id == node_id
        ]
        for edge in removed:
            del self._edges[edge.id]
        del self._nodes[node_id]
        return removed

    def update_node_config(self, node_id: str, patch: Dict[str, Any]) -> WorkflowNode:
        node = self.get_node(node_id)
        merged = dict(node.config)
        merged.update(copy.deepcopy(patch))
        node.config = merged
        return node

    def update_node_label(self, node_id: str, label: str) -> WorkflowNode:
        node = self.get_node(node_id)
        node.label = label
        return node

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------
    def connect_nodes(
        self,
        source_id: str,
        target_id: str,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
        source_schema: Optional[Sequence[SchemaColumn]] = None,
        *,
        edge_id: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Connection:
        """
        Connect two nodes.

        Structural problems raise InvalidConnection. A shape mismatch between
        ``source_schema`` and what the target's config expects does not: the
        edge is created and the returned Connection carries a SchemaWarning.
        """
        if source_id == target_id:
            raise InvalidConnection(f"Cannot connect node '{source_id}' to itself")
        missing = [node_id for node_id in (source_id, target_id) if node_id not in self._nodes]
        if missing:
            raise InvalidConnection(f"Connection endpoint(s) not found: {', '.join(missing)}")

        endpoint_key = (source_id, target_id, source_handle, target_handle)
        if any(edge.endpoint_key == endpoint_key for edge in self._edges.values()):
            raise InvalidConnection(f"Nodes '{source_id}' and '{target_id}' are already connected")
        if edge_id is not None and edge_id in self._edges:
            raise InvalidConnection(f"Edge '{edge_id}' already exists")

        edge_kwargs: Dict[str, Any] = {}
        if edge_id is not None:
            edge_kwargs["id"] = edge_id
        edge = WorkflowEdge(
            source_node_id=source_id,
            target_node_id=target_id,
            source_handle=source_handle,
            target_handle=target_handle,
            label=label,
            **edge_kwargs,
        )

        warning = None
        problems = check_compatibility(source_schema, self._nodes[target_id])
        if problems:
            warning = SchemaWarning(problems, source_id=source_id, target_id=target_id)
            edge.metadata = {**edge.metadata, SCHEMA_WARNING_KEY: problems}
            logger.info("Connected %s -> %s with schema mismatch: %s", source_id, target_id, problems)

        self._edges[edge.id] = edge
        return Connection(edge=edge, warning=warning)

    def get_edge(self, edge_id: str) -> WorkflowEdge:
        try:
            return self._edges[edge_id]
        except KeyError:
            raise EdgeNotFoundError(f"Edge '{edge_id}' not found") from None

    def remove_edge(self, edge_id: str) -> WorkflowEdge:
        edge = self.get_edge(edge_id)
        del self._edges[edge_id]
        return edge

    def set_edge_warning(self, edge_id: str, problems: Optional[List[str]]) -> WorkflowEdge:
        edge = self.get_edge(edge_id)
        metadata = {k: v for k, v in edge.metadata.items() if k != SCHEMA_WARNING_KEY}
        if problems:
            metadata[SCHEMA_WARNING_KEY] = list(problems)
        edge.metadata = metadata
        return edge

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def edges_from(self, node_id: str) -> List[WorkflowEdge]:
        return [edge for edge in self._edges.values() if edge.source_node_id == node_id]

    def edges_to(self, node_id: str) -> List[WorkflowEdge]:
        return [edge for edge in self._edges.values() if edge.target_node_id == node_id]

    def downstream(self, node_id: str) -> List[str]:
        """Direct downstream neighbours, in edge insertion order, without repeats."""
        seen: List[str] = []
        for edge in self.edges_from(node_id):
            if edge.target_node_id not in seen:
                seen.append(edge.target_node_id)
        return seen

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_definition(self, workflow_id: str, name: str, description: str = "") -> WorkflowDefinition:
        return WorkflowDefinition(
            id=workflow_id,
            name=name,
            description=description,
            nodes=[node.model_copy(deep=True) for node in self._nodes.values()],
            edges=[edge.model_copy(deep=True) for edge in self._edges.values()],
        )

    @classmethod
    def from_definition(
        cls,
        definition: WorkflowDefinition,
        node_store: Optional[NodeConfigStore] = None,
    ) -> "WorkflowGraph":
        graph = cls(node_store)
        graph._load(definition.nodes, definition.edges)
        return graph

    def _load(self, nodes: Iterable[WorkflowNode], edges: Iterable[WorkflowEdge]) -> None:
        for node in nodes:
            self._store.get(node.category, node.component_type)
            self._nodes[node.id] = node.model_copy(deep=True)
        for edge in edges:
            if edge.source_node_id not in self._nodes or edge.target_node_id not in self._nodes:
                # Dangling edges in stored definitions are dropped
                logger.warning("Dropping edge %s with missing endpoint", edge.id)
                continue
            self._edges[edge.id] = edge.model_copy(deep=True)
