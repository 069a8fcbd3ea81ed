"""
Execution start and status tracking.

Runs are dispatched through a RunnerClient and followed through a
StatusStream. The stream may drop, duplicate or reorder events; only
transitions to a strictly later status are applied, and a terminal run
never changes again. A run that stays silent past the staleness cutoff is
marked ``indeterminate`` rather than assumed to have completed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from workflow_engine.errors import ExecutionStartError, RunNotFoundError, StreamConnectivityError
from workflow_engine.runtime.runner import RunnerClient
from workflow_engine.runtime.status_stream import StatusStream, StreamState
from workflow_engine.schema.models import ExecutionRun, RunStatus, StatusEvent, is_temporary_id, utcnow

logger = logging.getLogger(__name__)

RunHook = Callable[[ExecutionRun], Awaitable[None]]


class ExecutionCoordinator:
    def __init__(
        self,
        runner: RunnerClient,
        stream: StatusStream,
        *,
        stale_cutoff: float = 300.0,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        on_start: Optional[RunHook] = None,
        on_update: Optional[RunHook] = None,
        owns_transport: bool = False,
    ) -> None:
        self.runner = runner
        self.stream = stream
        self.stale_cutoff = stale_cutoff
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.on_start = on_start
        self.on_update = on_update
        self.owns_transport = owns_transport

        self._runs: Dict[str, ExecutionRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, StreamState] = {}
        self._finished: Dict[str, asyncio.Event] = {}
        self._closed = False

    @classmethod
    def from_config(cls, runner: RunnerClient, stream: StatusStream, settings, **kwargs) -> "ExecutionCoordinator":
        return cls(
            runner,
            stream,
            stale_cutoff=settings.status_stale_cutoff_seconds,
            reconnect_attempts=settings.status_reconnect_attempts,
            reconnect_delay=settings.status_reconnect_delay_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    async def start_run(self, workflow_id: str) -> ExecutionRun:
        if self._closed:
            raise ExecutionStartError("Execution coordinator is closed")
        if is_temporary_id(workflow_id):
            raise ExecutionStartError("Workflow must be saved before it can be run")

        try:
            run_id = await self.runner.start(workflow_id)
        except ExecutionStartError:
            raise
        except Exception as exc:
            raise ExecutionStartError(f"Could not start workflow {workflow_id}: {exc}") from exc

        run = ExecutionRun(id=run_id, workflow_id=workflow_id, status=RunStatus.queued)
        self._runs[run_id] = run
        self._finished[run_id] = asyncio.Event()
        self._states[run_id] = StreamState.connecting
        await self._call_hook(self.on_start, run)

        self._tasks[run_id] = asyncio.create_task(self._track(run_id), name=f"track-run:{run_id}")
        logger.info("Started run %s for workflow %s", run_id, workflow_id)
        return run.model_copy()

    async def _call_hook(self, hook: Optional[RunHook], run: ExecutionRun) -> None:
        if hook is None:
            return
        try:
            await hook(run.model_copy())
        except Exception:
            logger.exception("Run hook failed for run %s", run.id)

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------
    async def _track(self, run_id: str) -> None:
        loop = asyncio.get_running_loop()
        run = self._runs[run_id]
        last_event_at = loop.time()
        failures = 0

        while not run.is_terminal:
            iterator = self.stream.subscribe(run_id, run.workflow_id).__aiter__()
            try:
                while not run.is_terminal:
                    remaining = self.stale_cutoff - (loop.time() - last_event_at)
                    if remaining <= 0:
                        await self._mark_indeterminate(run_id)
                        break
                    try:
                        event = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                    except asyncio.TimeoutError:
                        await self._mark_indeterminate(run_id)
                        break
                    except StopAsyncIteration:
                        raise StreamConnectivityError("Status stream ended") from None

                    self._states[run_id] = StreamState.connected
                    failures = 0
                    last_event_at = loop.time()
                    await self.apply_event(event)
            except StreamConnectivityError as exc:
                failures += 1
                if failures > self.reconnect_attempts:
                    self._states[run_id] = StreamState.lost
                    logger.warning("Status stream for run %s lost after %s reconnects: %s", run_id, failures - 1, exc)
                    remaining = self.stale_cutoff - (loop.time() - last_event_at)
                    if remaining > 0:
                        await asyncio.sleep(remaining)
                    await self._mark_indeterminate(run_id)
                    break
                self._states[run_id] = StreamState.reconnecting
                logger.info("Status stream for run %s dropped (%s); reconnecting", run_id, exc)
                await asyncio.sleep(self.reconnect_delay)
            finally:
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()

        if self._states.get(run_id) != StreamState.lost:
            self._states[run_id] = StreamState.closed

    async def apply_event(self, event: StatusEvent) -> bool:
        """Apply one status event; returns False when it is stale, duplicated or unknown."""
        run = self._runs.get(event.run_id) if event.run_id else None
        if run is None and event.run_id is None and event.workflow_id:
            candidates = [r for r in self._runs.values() if r.workflow_id == event.workflow_id and not r.is_terminal]
            run = max(candidates, key=lambda r: r.started_at) if candidates else None
        if run is None or run.is_terminal:
            return False
        if event.status.rank <= run.status.rank:
            return False

        run.status = event.status
        run.last_updated_at = utcnow()
        if event.error:
            run.error = event.error
        await self._call_hook(self.on_update, run)
        if run.is_terminal:
            self._finished[run.id].set()
            logger.info("Run %s finished with status %s", run.id, run.status.value)
        return True

    async def _mark_indeterminate(self, run_id: str) -> None:
        run = self._runs[run_id]
        if run.is_terminal:
            return
        run.status = RunStatus.indeterminate
        run.error = f"No status update received for {self.stale_cutoff:g}s"
        run.last_updated_at = utcnow()
        logger.warning("Run %s marked indeterminate: %s", run_id, run.error)
        await self._call_hook(self.on_update, run)
        self._finished[run_id].set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_run(self, run_id: str) -> ExecutionRun:
        try:
            return self._runs[run_id].model_copy()
        except KeyError:
            raise RunNotFoundError(f"Run '{run_id}' not found") from None

    def runs(self, workflow_id: Optional[str] = None) -> List[ExecutionRun]:
        return [
            run.model_copy()
            for run in self._runs.values()
            if workflow_id is None or run.workflow_id == workflow_id
        ]

    def stream_state(self, run_id: str) -> StreamState:
        try:
            return self._states[run_id]
        except KeyError:
            raise RunNotFoundError(f"Run '{run_id}' not found") from None

    async def wait_for_terminal(self, run_id: str, timeout: Optional[float] = None) -> ExecutionRun:
        self.get_run(run_id)
        await asyncio.wait_for(self._finished[run_id].wait(), timeout=timeout)
        return self.get_run(run_id)

    async def close(self) -> None:
        """Stop tracking. Remote runs keep going; only local observation ends."""
        self._closed = True
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for run_id in self._states:
            if self._states[run_id] != StreamState.lost:
                self._states[run_id] = StreamState.closed
        if self.owns_transport:
            await self.stream.close()
            await self.runner.close()
