"""
Temporary workflow identity and its migration to a persistent id.

A workflow that has never been saved is keyed by ``temp-<uuid>``. Anything
written under that key (schema cache, durable node schemas, edge rows,
timers) is moved by registered migration steps when the first save
allocates the persistent id.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from workflow_engine.errors import IdentityError, MigrationError
from workflow_engine.schema.models import (
    TEMP_ID_PREFIX,
    TemporaryIdentity,
    is_temporary_id,
    make_temporary_id,
)

logger = logging.getLogger(__name__)

MigrationStep = Callable[[str, str], Awaitable[int]]


@dataclass
class MigrationReport:
    temp_id: str
    real_id: str
    moved: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    error: Optional[MigrationError] = None

    @property
    def ok(self) -> bool:
        return not self.failures


class TemporaryIdentityManager:
    """
    Owns the current workflow id and serialises migration against writers.

    Writers use ``write_scope()`` to obtain the key to write under. A
    migration waits for open scopes to close and holds new ones until the
    id has switched, so no write lands under a key that has already been
    moved. Do not call ``migrate()`` from inside a write scope.
    """

    def __init__(
        self,
        workflow_id: Optional[str] = None,
        *,
        temporary: bool = False,
        step_attempts: int = 2,
        step_retry_delay: float = 0.0,
    ) -> None:
        if workflow_id is None:
            self._identity = TemporaryIdentity()
        elif is_temporary_id(workflow_id):
            self._identity = TemporaryIdentity(temp_id=workflow_id)
        elif temporary:
            self._identity = TemporaryIdentity(temp_id=f"{TEMP_ID_PREFIX}{workflow_id}")
        else:
            # Already persistent: nothing left to migrate
            self._identity = TemporaryIdentity(
                temp_id=make_temporary_id(), real_id=workflow_id, migrated=True
            )

        self.step_attempts = max(1, step_attempts)
        self.step_retry_delay = step_retry_delay
        self._steps: List[Tuple[str, MigrationStep]] = []
        self._condition = asyncio.Condition()
        self._open_scopes = 0
        self._migrating = False

    @property
    def identity(self) -> TemporaryIdentity:
        return self._identity.model_copy()

    @property
    def current_id(self) -> str:
        return self._identity.current_id

    @property
    def is_temporary(self) -> bool:
        return not self._identity.migrated

    @property
    def migrating(self) -> bool:
        return self._migrating

    def register_step(self, name: str, step: MigrationStep) -> None:
        """Register ``step(old_key, new_key) -> moved count``; steps run in registration order."""
        if any(existing == name for existing, _ in self._steps):
            raise IdentityError(f"Migration step '{name}' is already registered")
        self._steps.append((name, step))

    @asynccontextmanager
    async def write_scope(self) -> AsyncIterator[str]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._migrating)
            self._open_scopes += 1
        try:
            yield self.current_id
        finally:
            async with self._condition:
                self._open_scopes -= 1
                self._condition.notify_all()

    async def _run_step(self, name: str, step: MigrationStep, old_key: str, new_key: str) -> int:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.step_attempts + 1):
            try:
                return await step(old_key, new_key)
            except Exception as exc:
                last_error = exc
                logger.info(
                    "Migration step %s failed (attempt %s/%s): %s",
                    name,
                    attempt,
                    self.step_attempts,
                    exc,
                )
                if attempt < self.step_attempts and self.step_retry_delay:
                    await asyncio.sleep(self.step_retry_delay)
        raise last_error  # type: ignore[misc]

    async def migrate(self, real_id: str) -> MigrationReport:
        if not self.is_temporary:
            raise IdentityError(f"Workflow is already persistent as '{self.current_id}'")
        if not real_id or is_temporary_id(real_id):
            raise IdentityError(f"'{real_id}' is not a persistent workflow id")

        temp_id = self._identity.temp_id
        report = MigrationReport(temp_id=temp_id, real_id=real_id)

        async with self._condition:
            self._migrating = True
            await self._condition.wait_for(lambda: self._open_scopes == 0)

        try:
            for name, step in self._steps:
                try:
                    report.moved[name] = await self._run_step(name, step, temp_id, real_id)
                except Exception as exc:
                    report.failures[name] = str(exc) or type(exc).__name__
            # The id switches even if some steps failed
            self._identity = TemporaryIdentity(temp_id=temp_id, real_id=real_id, migrated=True)
        finally:
            async with self._condition:
                self._migrating = False
                self._condition.notify_all()

        if report.failures:
            report.error = MigrationError(temp_id, real_id, report.failures)
            logger.warning("%s", report.error)
        else:
            logger.info("Migrated workflow %s -> %s: %s", temp_id, real_id, report.moved)
        return report
