from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from fastapi import HTTPException, Request

from shared.config import CanvasflowConfig, config as shared_config
from shared.logger import get_logger
from workflow_engine.errors import (
    EdgeNotFoundError,
    ExecutionStartError,
    IdentityError,
    InvalidConnection,
    NodeNotFoundError,
    RunNotFoundError,
    SessionNotFoundError,
    UnknownNodeTypeError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowSaveError,
)
from workflow_engine.registry.node_catalog import get_node_config_store
from workflow_engine.runtime.runner import HttpRunnerClient, RunnerClient
from workflow_engine.runtime.session import WorkflowSession
from workflow_engine.runtime.status_stream import HttpStatusStream, StatusStream
from workflow_engine.storage.repository import TortoiseWorkflowRepository, WorkflowRepository

from api.workflows import models as api_models

logger = get_logger(__name__)

PROBLEM_BASE = "https://canvasflow.errors/workflows"
VALIDATION_PROBLEM = f"{PROBLEM_BASE}/validation"
NOT_FOUND_PROBLEM = f"{PROBLEM_BASE}/not-found"
RUN_PROBLEM = f"{PROBLEM_BASE}/run"
SAVE_PROBLEM = f"{PROBLEM_BASE}/save"

# (error type, status, problem type, title); first match wins
_ERROR_MAP = (
    (InvalidConnection, 400, VALIDATION_PROBLEM, "Invalid connection"),
    (UnknownNodeTypeError, 400, VALIDATION_PROBLEM, "Unknown node type"),
    (NodeNotFoundError, 404, NOT_FOUND_PROBLEM, "Node not found"),
    (EdgeNotFoundError, 404, NOT_FOUND_PROBLEM, "Edge not found"),
    (WorkflowNotFoundError, 404, NOT_FOUND_PROBLEM, "Workflow not found"),
    (RunNotFoundError, 404, NOT_FOUND_PROBLEM, "Run not found"),
    (SessionNotFoundError, 404, NOT_FOUND_PROBLEM, "Session not found"),
    (ExecutionStartError, 409, RUN_PROBLEM, "Run could not be started"),
    (IdentityError, 409, VALIDATION_PROBLEM, "Workflow identity conflict"),
    (WorkflowSaveError, 502, SAVE_PROBLEM, "Workflow could not be saved"),
)


def _raise_problem(*, type_uri: str, title: str, detail: str, status: int) -> None:
    payload = api_models.ProblemDetails(type=type_uri, title=title, status=status, detail=detail)
    raise HTTPException(status_code=status, detail=payload.model_dump())


@contextmanager
def engine_errors() -> Iterator[None]:
    """Translate engine errors raised inside the block into problem responses."""
    try:
        yield
    except WorkflowEngineError as exc:
        for error_type, status, type_uri, title in _ERROR_MAP:
            if isinstance(exc, error_type):
                _raise_problem(type_uri=type_uri, title=title, detail=str(exc), status=status)
        _raise_problem(type_uri=VALIDATION_PROBLEM, title="Workflow error", detail=str(exc), status=400)


def list_node_types() -> api_models.NodeTypeResponse:
    store = get_node_config_store()
    return api_models.NodeTypeResponse(
        categories=store.categories(),
        node_types=[
            api_models.NodeTypeDescriptor(
                category=definition.category,
                component_type=definition.component_type,
                title=definition.title,
                description=definition.description,
                default_config=definition.make_config(),
            )
            for definition in store.list_types()
        ],
    )


class SessionManager:
    """
    Open editing sessions, addressable by their temporary id and, once
    saved, by their persistent id as well.
    """

    def __init__(
        self,
        *,
        repository: Optional[WorkflowRepository] = None,
        runner: Optional[RunnerClient] = None,
        stream: Optional[StatusStream] = None,
        settings: Optional[CanvasflowConfig] = None,
    ) -> None:
        self.settings = settings or shared_config
        self.repository = repository or TortoiseWorkflowRepository()
        self.runner = runner or HttpRunnerClient(
            self.settings.runner_base_url, timeout=self.settings.runner_timeout_seconds
        )
        self.stream = stream or HttpStatusStream(
            self.settings.runner_base_url, poll_timeout=self.settings.status_poll_timeout_seconds
        )
        self._sessions: Dict[str, WorkflowSession] = {}
        self._lock = asyncio.Lock()

    def _index(self, session: WorkflowSession) -> None:
        self._sessions[session.workflow_id] = session
        self._sessions[session.identity.identity.temp_id] = session

    async def open(self, owner_id: str, payload: api_models.SessionCreateRequest) -> WorkflowSession:
        async with self._lock:
            if payload.workflow_id and payload.workflow_id in self._sessions:
                existing = self._sessions[payload.workflow_id]
                if existing.owner_id == owner_id:
                    return existing
            session = WorkflowSession(
                owner_id,
                repository=self.repository,
                runner=self.runner,
                stream=self.stream,
                workflow_id=payload.workflow_id,
                name=payload.name,
                description=payload.description,
                settings=self.settings,
                on_migrated=self.refresh,
            )
            await session.init()
            self._index(session)
            logger.info("Opened session %s for %s", session.workflow_id, owner_id)
            return session

    def get(self, owner_id: str, session_id: str) -> WorkflowSession:
        session = self._sessions.get(session_id)
        if session is None or session.owner_id != owner_id:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        return session

    def refresh(self, session: WorkflowSession) -> None:
        """Make a session reachable under its current id; called on every migration."""
        self._index(session)

    async def close(self, owner_id: str, session_id: str) -> None:
        session = self.get(owner_id, session_id)
        for key in [key for key, value in self._sessions.items() if value is session]:
            del self._sessions[key]
        await session.dispose()
        logger.info("Closed session %s", session.workflow_id)

    async def close_all(self) -> None:
        sessions = {id(session): session for session in self._sessions.values()}
        self._sessions.clear()
        for session in sessions.values():
            await session.dispose()
        await self.runner.close()
        await self.stream.close()


def get_session_manager(request: Request) -> SessionManager:
    manager = getattr(request.app.state, "session_manager", None)
    if manager is None:
        manager = SessionManager()
        request.app.state.session_manager = manager
    return manager


def session_response(session: WorkflowSession, session_id: Optional[str] = None) -> api_models.SessionResponse:
    schemas = {
        node_id: api_models.NodeSchemaView(input=entry.input, output=entry.output)
        for node_id, entry in session.registry.entries(session.workflow_id).items()
    }
    return api_models.SessionResponse(
        session_id=session_id or session.workflow_id,
        workflow_id=session.workflow_id,
        is_temporary=session.is_temporary,
        name=session.name,
        description=session.description,
        save_state=session.save_state,
        last_error=session.last_error,
        last_saved_at=session.last_saved_at,
        nodes=session.graph.nodes,
        edges=session.graph.edges,
        schemas=schemas,
        propagation_issues=[
            api_models.PropagationIssue(
                source_node_id=result.source_id,
                target_node_id=result.target_id,
                outcome=result.outcome.value,
                attempts=result.attempts,
                error=result.error,
            )
            for result in session.propagation_issues
        ],
    )


async def save_session(manager: SessionManager, session: WorkflowSession) -> api_models.SaveResponse:
    definition = await session.save()
    manager.refresh(session)
    report = session.migration_report
    warnings: List[str] = []
    migrated: Dict[str, int] = {}
    if report is not None and report.real_id == definition.id:
        migrated = dict(report.moved)
        if report.error is not None:
            warnings.append(str(report.error))
    return api_models.SaveResponse(
        workflow_id=definition.id,
        name=definition.name,
        save_state=session.save_state,
        migrated=migrated,
        warnings=warnings,
    )


async def start_run(manager: SessionManager, session: WorkflowSession) -> api_models.RunResponse:
    run = await session.run()
    manager.refresh(session)
    return api_models.RunResponse.from_run(run, session.coordinator.stream_state(run.id).value)


def get_run(session: WorkflowSession, run_id: str) -> api_models.RunResponse:
    run = session.get_run(run_id)
    return api_models.RunResponse.from_run(run, session.coordinator.stream_state(run_id).value)
