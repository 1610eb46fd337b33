"""Background sync tasks and their cancellation signal.

A populate job runs detached from the request that started it. Its authority
to write comes from the collection lock, which expires after its TTL, so each
task carries a ``CancellationToken`` whose deadline is that TTL. The pipeline
checks the token at every page, probe and batch and stops once it trips.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

import structlog

from suchmarket.core.timezone import utc_now
from suchmarket.services.exceptions import SyncCancelledError

logger = structlog.get_logger()


class CancellationToken:
    """Cooperative cancellation with an optional monotonic deadline."""

    def __init__(
        self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic
    ):
        self._clock = clock
        self._deadline = clock() + ttl_seconds if ttl_seconds is not None else None
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        if not self._cancelled and self._deadline is not None and self._clock() >= self._deadline:
            self.cancel("lock_expired")
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SyncCancelledError(f"Sync abandoned: {self.reason}")


@dataclass
class SyncTask:
    """Handle on a detached sync job."""

    contract_address: str
    kind: str
    token: CancellationToken
    id: UUID = field(default_factory=uuid4)
    started_at: datetime = field(default_factory=utc_now)
    task: asyncio.Task | None = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)
        if self.task is not None and not self.task.done():
            self.task.cancel()


class SyncTaskRegistry:
    """Tracks in-flight background sync tasks so they can be cancelled on shutdown."""

    def __init__(self):
        self._tasks: dict[UUID, SyncTask] = {}

    def start(
        self,
        contract_address: str,
        kind: str,
        token: CancellationToken,
        job: Callable[[CancellationToken], Awaitable[object]],
    ) -> SyncTask:
        """Schedule ``job(token)`` on the running loop and keep a handle on it."""
        sync_task = SyncTask(contract_address=contract_address, kind=kind, token=token)
        sync_task.task = asyncio.create_task(job(token), name=f"{kind}:{contract_address}")
        self._tasks[sync_task.id] = sync_task
        sync_task.task.add_done_callback(lambda _: self._tasks.pop(sync_task.id, None))
        logger.info(
            "sync_task.started",
            task_id=str(sync_task.id),
            kind=kind,
            contract_address=contract_address,
        )
        return sync_task

    def active(self) -> list[SyncTask]:
        return [t for t in self._tasks.values() if not t.done]

    async def shutdown(self) -> None:
        """Cancel every in-flight task and wait for them to unwind."""
        tasks = list(self._tasks.values())
        for sync_task in tasks:
            sync_task.cancel("shutdown")
        pending = [t.task for t in tasks if t.task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("sync_task.shutdown_complete", cancelled=len(tasks))
