"""
Shared exception hierarchy for the workflow engine.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class WorkflowEngineError(Exception):
    """Base class for all engine related errors."""


class InvalidConnection(WorkflowEngineError):
    """Raised when an edge would violate graph structure (missing endpoint, duplicate, self-loop)."""


class NodeNotFoundError(WorkflowEngineError, KeyError):
    """Raised when a node id is not part of the graph."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class EdgeNotFoundError(WorkflowEngineError, KeyError):
    """Raised when an edge id is not part of the graph."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class UnknownNodeTypeError(WorkflowEngineError):
    """Raised for a (category, component type) pair outside the node catalog."""


class SchemaPropagationError(WorkflowEngineError):
    """Raised when a durable schema write fails or times out."""


class IdentityError(WorkflowEngineError):
    """Raised when the temporary identity manager is used out of order."""


class WorkflowSaveError(WorkflowEngineError):
    """Raised when persisting a workflow fails."""


class ExecutionStartError(WorkflowEngineError):
    """Raised when a run cannot be started. The workflow stays editable."""


class StreamConnectivityError(WorkflowEngineError):
    """Raised by status streams for transport problems, never for run outcomes."""


class MigrationError(WorkflowEngineError):
    """
    Partial failure while moving temporary-keyed state to a persistent id.

    Reported as a warning: some state may need to be re-entered.
    """

    def __init__(self, temp_id: str, real_id: str, failures: Dict[str, str]) -> None:
        self.temp_id = temp_id
        self.real_id = real_id
        self.failures = dict(failures)
        steps = ", ".join(sorted(self.failures))
        super().__init__(
            f"Migration {temp_id} -> {real_id} partially failed ({steps}); "
            "some data might need to be re-entered"
        )


class SchemaWarning(UserWarning):
    """
    Non-fatal shape mismatch on an edge that was created anyway.
    """

    def __init__(
        self,
        problems: List[str],
        *,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> None:
        self.problems = list(problems)
        self.source_id = source_id
        self.target_id = target_id
        super().__init__("; ".join(self.problems))


class WorkflowNotFoundError(WorkflowEngineError, KeyError):
    """Raised when a workflow id is unknown or belongs to another owner."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class RunNotFoundError(WorkflowEngineError, KeyError):
    """Raised when a run id is not tracked by the coordinator."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class SessionNotFoundError(WorkflowEngineError, KeyError):
    """Raised when no open editing session matches the given id."""

    def __str__(self) -> str:
        return Exception.__str__(self)
