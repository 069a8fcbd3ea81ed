"""
Status stream transports.

A stream yields StatusEvent objects for one run. Delivery is at-least-once
and unordered; the coordinator enforces ordering. Transport problems are
raised as StreamConnectivityError and never mean anything about the run.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from workflow_engine.errors import StreamConnectivityError
from workflow_engine.schema.models import StatusEvent

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    connecting = "connecting"
    connected = "connected"
    reconnecting = "reconnecting"
    closed = "closed"
    lost = "lost"


class StatusStream(ABC):
    @abstractmethod
    def subscribe(self, run_id: str, workflow_id: Optional[str] = None) -> AsyncIterator[StatusEvent]:
        """Yield events for ``run_id``; events keyed only by ``workflow_id`` are included."""

    async def close(self) -> None:
        return None


def _matches(event: StatusEvent, run_id: str, workflow_id: Optional[str]) -> bool:
    if event.run_id is not None:
        return event.run_id == run_id
    return workflow_id is not None and event.workflow_id == workflow_id


_FALLBACK_RUN_KEYS = ("last_run_id", "run_id", "execution_id")


def _fallback_run_id(payload: Dict[str, Any]) -> Optional[str]:
    """Run id a workflow status payload reports on; the status of any other run is ignored."""
    for key in _FALLBACK_RUN_KEYS:
        if payload.get(key):
            return str(payload[key])
    return None


_END = object()


@dataclass
class _Subscription:
    run_id: str
    workflow_id: Optional[str]
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)


class InMemoryStatusStream(StatusStream):
    """
    In-process transport. Published events are kept and replayed to new
    subscribers, as a reconnecting client would see them again.
    """

    def __init__(self) -> None:
        self._history: List[StatusEvent] = []
        self._subscriptions: List[_Subscription] = []
        self.subscribe_count = 0

    def publish(self, event: StatusEvent | Dict[str, Any]) -> StatusEvent:
        if not isinstance(event, StatusEvent):
            event = StatusEvent.model_validate(event)
        self._history.append(event)
        for subscription in list(self._subscriptions):
            if _matches(event, subscription.run_id, subscription.workflow_id):
                subscription.queue.put_nowait(event)
        return event

    def disconnect(self, run_id: Optional[str] = None) -> int:
        """Break matching subscriptions with a StreamConnectivityError."""
        dropped = 0
        for subscription in list(self._subscriptions):
            if run_id is None or subscription.run_id == run_id:
                subscription.queue.put_nowait(StreamConnectivityError("status stream disconnected"))
                dropped += 1
        return dropped

    def subscriber_count(self, run_id: Optional[str] = None) -> int:
        return sum(1 for sub in self._subscriptions if run_id is None or sub.run_id == run_id)

    async def subscribe(self, run_id: str, workflow_id: Optional[str] = None) -> AsyncIterator[StatusEvent]:
        subscription = _Subscription(run_id=run_id, workflow_id=workflow_id)
        self.subscribe_count += 1
        for event in self._history:
            if _matches(event, run_id, workflow_id):
                subscription.queue.put_nowait(event)
        self._subscriptions.append(subscription)
        try:
            while True:
                item = await subscription.queue.get()
                if item is _END:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.queue.put_nowait(_END)


class HttpStatusStream(StatusStream):
    """
    Long-polls the execution backend.

    ``GET /runs/{run_id}/events`` returns ``{"events": [...], "cursor": ...}``.
    When the backend does not know the run yet (404) the stream falls back
    to ``GET /workflows/{workflow_id}/status``, which reports the workflow's
    latest run status. That status is only used when it names this run;
    until then the stream stays silent and staleness decides.
    """

    def __init__(
        self,
        base_url: str,
        *,
        poll_timeout: float = 25.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.poll_timeout = poll_timeout
        self._client = client or httpx.AsyncClient(timeout=poll_timeout + 5)
        self._owns_client = client is None

    async def _get(self, path: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            response = await self._client.get(f"{self.base_url}{path}", params=params)
        except httpx.TimeoutException:
            # Timeout is normal in long-polling
            return {}
        except httpx.HTTPError as exc:
            raise StreamConnectivityError(f"Status request to {path} failed: {exc}") from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise StreamConnectivityError(f"Status request to {path} returned {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise StreamConnectivityError(f"Status response from {path} is not JSON") from exc

    def _parse(self, payload: Dict[str, Any], run_id: str, workflow_id: Optional[str]) -> Optional[StatusEvent]:
        try:
            return StatusEvent.model_validate({"run_id": run_id, "workflow_id": workflow_id, **payload})
        except ValidationError:
            logger.warning("Ignoring malformed status event for run %s: %s", run_id, payload)
            return None

    async def subscribe(self, run_id: str, workflow_id: Optional[str] = None) -> AsyncIterator[StatusEvent]:
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"timeout": self.poll_timeout}
            if cursor:
                params["cursor"] = cursor
            data = await self._get(f"/runs/{run_id}/events", params)

            if data is None:
                if workflow_id is None:
                    raise StreamConnectivityError(f"Run {run_id} is unknown to the status backend")
                fallback = await self._get(f"/workflows/{workflow_id}/status", {"timeout": self.poll_timeout})
                if not fallback:
                    await asyncio.sleep(min(self.poll_timeout, 1.0))
                    continue
                status = fallback.get("last_run_status") or fallback.get("status")
                if status and _fallback_run_id(fallback) == run_id:
                    event = self._parse({"status": status, "error": fallback.get("error")}, run_id, workflow_id)
                    if event is not None:
                        yield event
                await asyncio.sleep(min(self.poll_timeout, 1.0))
                continue

            cursor = data.get("cursor", cursor)
            for payload in data.get("events", []):
                if isinstance(payload, dict):
                    event = self._parse(payload, run_id, workflow_id)
                    if event is not None:
                        yield event

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
