"""
Schema helpers: column normalisation, set-based comparison, best-effort
inference of a node's output schema from its config, and the compatibility
check used to flag mismatched connections.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from workflow_engine.schema.models import NodeCategory, Schema, SchemaColumn, WorkflowNode


COLUMN_TYPES = ("string", "text", "number", "boolean", "date", "object", "array", "unknown")

_TYPE_SYNONYMS: Dict[str, str] = {
    **{name: "string" for name in ("varchar", "char", "string", "str")},
    **{
        name: "number"
        for name in ("int", "integer", "float", "double", "decimal", "number", "num", "numeric")
    },
    **{name: "date" for name in ("date", "datetime", "timestamp", "time")},
    **{name: "boolean" for name in ("bool", "boolean")},
    **{name: "object" for name in ("object", "json", "map", "dict")},
    **{name: "array" for name in ("array", "list")},
    "text": "text",
}

NUMERIC_OPERATORS = frozenset({"greater-than", "less-than", "between"})
TEXT_OPERATORS = frozenset({"contains", "starts-with", "ends-with"})
_TEXTUAL_TYPES = frozenset({"string", "text"})

# Config keys that name a single column of the node's input
COLUMN_REFERENCE_KEYS = ("column", "groupByColumn", "sortColumn")

_PASS_THROUGH_CATEGORIES = frozenset(
    {NodeCategory.processing, NodeCategory.output, NodeCategory.control, NodeCategory.utility}
)
_OPAQUE_PROCESSING_TYPES = frozenset({"joinMerge", "pivotTable"})


def standardize_column_type(value: Optional[str]) -> str:
    if not value:
        return "string"
    return _TYPE_SYNONYMS.get(str(value).strip().lower(), "unknown")


def coerce_schema(items: Optional[Iterable[Any]]) -> Schema:
    """
    Build a Schema from columns or loose dicts.

    Types are mapped onto the canonical set, nameless entries get positional
    names and repeated names are suffixed so every column stays addressable.
    """
    if items is None:
        return []

    seen: Dict[str, int] = {}
    columns: Schema = []
    for index, item in enumerate(items):
        if isinstance(item, SchemaColumn):
            name, raw_type, nullable = item.name, item.data_type, item.nullable
        elif isinstance(item, Mapping):
            name = item.get("name") or ""
            raw_type = item.get("type") or item.get("data_type") or item.get("dataType")
            nullable = item.get("nullable")
        else:
            raise TypeError(f"Schema column must be a mapping, received {type(item).__name__}")

        name = str(name).strip() or f"column_{index}"
        count = seen.get(name, 0)
        seen[name] = count + 1
        if count:
            name = f"{name}_{count}"

        data_type = raw_type if raw_type in COLUMN_TYPES else standardize_column_type(raw_type)
        columns.append(SchemaColumn(name=name, type=data_type, nullable=nullable))
    return columns


def schema_signature(schema: Optional[Sequence[SchemaColumn]]) -> Optional[frozenset]:
    if schema is None:
        return None
    return frozenset(column.key for column in schema)


def schemas_equal(left: Optional[Sequence[SchemaColumn]], right: Optional[Sequence[SchemaColumn]]) -> bool:
    """Set-based equality on (name, type); column order is display-only."""
    return schema_signature(left) == schema_signature(right)


def dump_schema(schema: Sequence[SchemaColumn]) -> List[Dict[str, Any]]:
    return [column.model_dump(by_alias=True, exclude_none=True) for column in schema]


def _column_type(schema: Sequence[SchemaColumn], name: str, default: str = "string") -> str:
    for column in schema:
        if column.name == name:
            return column.data_type
    return default


def _aggregate(config: Mapping[str, Any], input_schema: Schema) -> Schema:
    group_by = config.get("groupByColumn") or ""
    aggregations = config.get("aggregations") or []
    if not group_by and not aggregations:
        return list(input_schema)

    columns: List[Dict[str, Any]] = []
    if group_by:
        columns.append({"name": group_by, "type": _column_type(input_schema, group_by)})
    for aggregation in aggregations:
        if not isinstance(aggregation, Mapping) or not aggregation.get("column"):
            continue
        function = aggregation.get("function") or "sum"
        alias = aggregation.get("alias") or f"{function}_{aggregation['column']}"
        columns.append({"name": alias, "type": "number"})
    return coerce_schema(columns)


def _convert_types(config: Mapping[str, Any], input_schema: Schema) -> Schema:
    conversions = {
        item["column"]: standardize_column_type(item.get("toType"))
        for item in config.get("conversions") or []
        if isinstance(item, Mapping) and item.get("column")
    }
    return [
        SchemaColumn(name=column.name, type=conversions.get(column.name, column.data_type), nullable=column.nullable)
        for column in input_schema
    ]


def _append_column(input_schema: Schema, name: str, data_type: str) -> Schema:
    if any(column.name == name for column in input_schema):
        return list(input_schema)
    return list(input_schema) + [SchemaColumn(name=name, type=data_type)]


def infer_output_schema(node: WorkflowNode, input_schema: Optional[Schema]) -> Optional[Schema]:
    """
    Best-effort output schema for ``node`` given its current input.

    Returns None when nothing can be inferred (the node's output comes from
    outside the engine, e.g. a processed upload or an integration call).
    """
    config = node.config or {}
    explicit = config.get("schema")
    if isinstance(explicit, list):
        return coerce_schema(explicit)

    if node.category in (NodeCategory.input, NodeCategory.integration):
        return None
    if input_schema is None:
        return None

    if node.category == NodeCategory.ai:
        return _append_column(input_schema, config.get("outputColumn") or "ai_response", "text")

    if node.component_type == "aggregation":
        return _aggregate(config, input_schema)
    if node.component_type == "dataTypeConversion":
        return _convert_types(config, input_schema)
    if node.component_type == "formulaCalculation":
        return _append_column(input_schema, config.get("outputColumn") or "result", "number")
    if node.component_type in _OPAQUE_PROCESSING_TYPES:
        return None

    if node.category in _PASS_THROUGH_CATEGORIES:
        return list(input_schema)
    return None


def _is_number(value: Any) -> bool:
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


def check_compatibility(source_schema: Optional[Sequence[SchemaColumn]], target: WorkflowNode) -> List[str]:
    """
    Problems between an upstream output and the columns ``target`` expects.

    An unknown (None or empty) source schema never produces problems.
    """
    if not source_schema:
        return []

    config = target.config or {}
    by_name = {column.name: column for column in source_schema}
    problems: List[str] = []

    referenced = [config.get(key) for key in COLUMN_REFERENCE_KEYS]
    for item in list(config.get("aggregations") or []) + list(config.get("conversions") or []):
        if isinstance(item, Mapping):
            referenced.append(item.get("column"))

    for name in referenced:
        if name and name not in by_name:
            problems.append(f'Column "{name}" does not exist in the source data')

    column = by_name.get(config.get("column") or "")
    operator = config.get("operator")
    if column is not None and operator:
        if column.data_type == "number" and operator in TEXT_OPERATORS:
            problems.append(f'Operator "{operator}" cannot be used with numeric column "{column.name}"')
        if column.data_type in _TEXTUAL_TYPES and operator in NUMERIC_OPERATORS:
            problems.append(f'Operator "{operator}" cannot be used with text column "{column.name}"')
        value = config.get("value")
        if column.data_type == "number" and value not in (None, "") and operator != "equals" and not _is_number(value):
            problems.append(f'Value "{value}" is not a valid number for column "{column.name}"')

    return problems
