from enum import Enum

from tortoise import fields, models


WORKFLOW_ID_PREFIX = "wf_"


class SchemaDirection(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


def make_workflow_public_id(pk: int) -> str:
    return f"{WORKFLOW_ID_PREFIX}{pk}"


def parse_workflow_public_id(value: str) -> int:
    if not value.startswith(WORKFLOW_ID_PREFIX):
        raise ValueError("Invalid workflow_id format")
    return int(value.removeprefix(WORKFLOW_ID_PREFIX))


class WorkflowRecord(models.Model):
    """Persisted workflow: metadata plus the full {nodes, edges} definition."""

    id = fields.IntField(primary_key=True)
    owner_id = fields.CharField(max_length=255, db_index=True)
    name = fields.CharField(max_length=255)
    description = fields.TextField(null=True)
    definition = fields.JSONField()
    version = fields.IntField(default=1)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "workflow_records"
        ordering = ("-updated_at", "id")
        unique_together = (("owner_id", "name"),)

    def __str__(self) -> str:
        return f"WorkflowRecord<{self.name} v{self.version}>"

    @property
    def workflow_id(self) -> str:
        return make_workflow_public_id(self.id)


class WorkflowEdgeRecord(models.Model):
    """
    Denormalized edge row for queries that don't need the whole definition.

    ``workflow_id`` is a plain string key so edges can be recorded while the
    workflow still has a temporary identity.
    """

    id = fields.IntField(primary_key=True)
    workflow_id = fields.CharField(max_length=64, db_index=True)
    edge_id = fields.CharField(max_length=128)
    source_node_id = fields.CharField(max_length=128)
    target_node_id = fields.CharField(max_length=128)
    edge_type = fields.CharField(max_length=32, default="default")
    metadata = fields.JSONField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "workflow_edges"
        unique_together = (("workflow_id", "edge_id"),)
        indexes = (("workflow_id", "source_node_id", "target_node_id"),)

    def __str__(self) -> str:
        return f"WorkflowEdgeRecord<{self.source_node_id}->{self.target_node_id}>"


class NodeSchemaRecord(models.Model):
    """Durable copy of a node's input or output schema."""

    id = fields.IntField(primary_key=True)
    workflow_id = fields.CharField(max_length=64, db_index=True)
    node_id = fields.CharField(max_length=128)
    direction = fields.CharEnumField(SchemaDirection, max_length=10)
    columns = fields.JSONField()
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "workflow_node_schemas"
        unique_together = (("workflow_id", "node_id", "direction"),)

    def __str__(self) -> str:
        return f"NodeSchemaRecord<{self.node_id}:{self.direction}>"


class WorkflowRunRecord(models.Model):
    """Client-side record of a run dispatched to the execution backend."""

    id = fields.IntField(primary_key=True)
    run_id = fields.CharField(max_length=128, unique=True)
    workflow = fields.ForeignKeyField("models.WorkflowRecord", related_name="runs")
    status = fields.CharField(max_length=20)
    error = fields.TextField(null=True)
    started_at = fields.DatetimeField()
    last_updated_at = fields.DatetimeField()
    finished_at = fields.DatetimeField(null=True)

    class Meta:
        table = "workflow_runs"
        ordering = ("-started_at", "id")

    def __str__(self) -> str:
        return f"WorkflowRunRecord<{self.run_id}:{self.status}>"
