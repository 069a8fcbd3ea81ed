"""
Client for the remote execution backend: one call, workflow id -> run id.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from workflow_engine.errors import ExecutionStartError

logger = logging.getLogger(__name__)


class RunnerClient(ABC):
    @abstractmethod
    async def start(self, workflow_id: str) -> str:
        """Dispatch a run of ``workflow_id`` and return the backend's run id."""

    async def close(self) -> None:
        return None


class HttpRunnerClient(RunnerClient):
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def start(self, workflow_id: str) -> str:
        try:
            response = await self._client.post(f"{self.base_url}/runs", json={"workflow_id": workflow_id})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ExecutionStartError(
                f"Runner rejected workflow {workflow_id}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExecutionStartError(f"Runner unreachable: {exc}") from exc
        except ValueError as exc:
            raise ExecutionStartError("Runner returned a non-JSON response") from exc

        run_id = (data.get("run_id") or data.get("execution_id")) if isinstance(data, dict) else None
        if not run_id:
            raise ExecutionStartError("Runner response did not include a run id")
        logger.info("Runner accepted workflow %s as run %s", workflow_id, run_id)
        return str(run_id)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
