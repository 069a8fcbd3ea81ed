"""
Public entrypoint for opening workflow editing sessions.
"""

from __future__ import annotations

from typing import Optional

from shared.config import CanvasflowConfig, config
from workflow_engine.runtime.runner import HttpRunnerClient, RunnerClient
from workflow_engine.runtime.session import WorkflowSession
from workflow_engine.runtime.status_stream import HttpStatusStream, StatusStream
from workflow_engine.storage.repository import TortoiseWorkflowRepository, WorkflowRepository


async def open_session(
    owner_id: str,
    workflow_id: Optional[str] = None,
    *,
    name: Optional[str] = None,
    repository: Optional[WorkflowRepository] = None,
    runner: Optional[RunnerClient] = None,
    stream: Optional[StatusStream] = None,
    settings: Optional[CanvasflowConfig] = None,
) -> WorkflowSession:
    """
    Open (and initialize) a session for a new or persisted workflow.

    Transports default to the HTTP runner and status stream configured in
    ``shared.config``. Transports created here are closed by ``dispose()``;
    ones passed in stay open.
    """

    settings = settings or config
    owned = []
    if runner is None:
        runner = HttpRunnerClient(settings.runner_base_url, timeout=settings.runner_timeout_seconds)
        owned.append(runner)
    if stream is None:
        stream = HttpStatusStream(settings.runner_base_url, poll_timeout=settings.status_poll_timeout_seconds)
        owned.append(stream)
    session = WorkflowSession(
        owner_id,
        repository=repository or TortoiseWorkflowRepository(),
        runner=runner,
        stream=stream,
        workflow_id=workflow_id,
        name=name,
        settings=settings,
        owned_transports=owned,
    )
    try:
        return await session.init()
    except Exception:
        await session.dispose()
        raise


__all__ = ["WorkflowSession", "open_session"]
