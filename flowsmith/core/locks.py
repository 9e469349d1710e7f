"""Per-workflow reader/writer locks for the graph manager."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


class WorkflowLockTimeout(Exception):
    """Lock for a workflow could not be acquired in time."""

    def __init__(self, workflow_id: str, mode: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for {mode} lock on workflow '{workflow_id}'"
        )
        self.workflow_id = workflow_id
        self.mode = mode
        self.timeout = timeout


class WorkflowLock:
    """Asyncio reader/writer lock for one workflow.

    Readers (validate, simulate) may overlap each other; a writer (apply,
    undo, redo) runs alone. Waiting writers block new readers so writes are
    not starved.
    """

    LOCK_TIMEOUT: float = 30.0

    def __init__(self, workflow_id: str, timeout: float | None = None):
        self.workflow_id = workflow_id
        self.timeout = timeout if timeout is not None else self.LOCK_TIMEOUT
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def locked(self) -> bool:
        return self._writer or self._readers > 0

    async def _wait_for(self, predicate, mode: str) -> None:
        try:
            await asyncio.wait_for(self._cond.wait_for(predicate), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{mode.capitalize()} lock timeout on workflow '{self.workflow_id}'")
            raise WorkflowLockTimeout(self.workflow_id, mode, self.timeout) from None

    @contextlib.asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._wait_for(lambda: not self._writer and not self._waiting_writers, "read")
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._wait_for(lambda: not self._writer and not self._readers, "write")
            finally:
                self._waiting_writers -= 1
                if not self._waiting_writers:
                    self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()
