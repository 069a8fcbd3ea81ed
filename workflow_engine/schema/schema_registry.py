"""
In-memory cache of each node's current input and output schema.

Entries are keyed by (workflow key, node id) where the workflow key is the
workflow's current id, temporary or persistent. The durable copy lives in
the workflow repository; this registry is what propagation and the
compatibility checks read synchronously.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from workflow_engine.schema.models import Schema


@dataclass
class NodeSchemas:
    input: Optional[Schema] = None
    output: Optional[Schema] = None


class SchemaRegistry:
    """
    Stores node schemas. Writes replace a schema wholesale, never merge.
    """

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], NodeSchemas] = {}

    def _entry(self, workflow_key: str, node_id: str) -> NodeSchemas:
        return self._entries.setdefault((workflow_key, node_id), NodeSchemas())

    def get_input(self, workflow_key: str, node_id: str) -> Optional[Schema]:
        entry = self._entries.get((workflow_key, node_id))
        return list(entry.input) if entry and entry.input is not None else None

    def get_output(self, workflow_key: str, node_id: str) -> Optional[Schema]:
        entry = self._entries.get((workflow_key, node_id))
        return list(entry.output) if entry and entry.output is not None else None

    def set_input(self, workflow_key: str, node_id: str, schema: Schema) -> None:
        self._entry(workflow_key, node_id).input = list(schema)

    def set_output(self, workflow_key: str, node_id: str, schema: Schema) -> None:
        self._entry(workflow_key, node_id).output = list(schema)

    def clear_input(self, workflow_key: str, node_id: str) -> None:
        entry = self._entries.get((workflow_key, node_id))
        if entry is None:
            return
        entry.input = None
        if entry.output is None:
            del self._entries[(workflow_key, node_id)]

    def remove_node(self, workflow_key: str, node_id: str) -> None:
        self._entries.pop((workflow_key, node_id), None)

    def entries(self, workflow_key: str) -> Dict[str, NodeSchemas]:
        return {
            node_id: entry
            for (key, node_id), entry in self._entries.items()
            if key == workflow_key
        }

    def count(self, workflow_key: str) -> int:
        return sum(1 for key, _ in self._entries if key == workflow_key)

    def rekey(self, old_key: str, new_key: str) -> int:
        """Move every entry of ``old_key`` under ``new_key``; returns how many moved."""
        moved = 0
        for key, node_id in list(self._entries):
            if key != old_key:
                continue
            self._entries[(new_key, node_id)] = self._entries.pop((key, node_id))
            moved += 1
        return moved
