"""Background task registry and cancellation token tests."""

import asyncio

import pytest

from suchmarket.services.exceptions import SyncCancelledError
from suchmarket.services.sync.tasks import CancellationToken, SyncTaskRegistry

ADDRESS = "0xabcdef0123456789abcdef0123456789abcdef01"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_token_expires_with_deadline():
    clock = FakeClock()
    token = CancellationToken(ttl_seconds=300, clock=clock)

    clock.now = 299
    assert token.cancelled is False

    clock.now = 300
    assert token.cancelled is True
    assert token.reason == "lock_expired"
    with pytest.raises(SyncCancelledError, match="lock_expired"):
        token.raise_if_cancelled()


def test_token_without_deadline_only_cancels_explicitly():
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel("shutdown")
    token.cancel("later reason is ignored")

    assert token.cancelled is True
    assert token.reason == "shutdown"


@pytest.mark.asyncio
async def test_registry_tracks_and_forgets_tasks():
    registry = SyncTaskRegistry()
    release = asyncio.Event()

    async def job(token):
        await release.wait()
        return "done"

    sync_task = registry.start(ADDRESS, "populate", CancellationToken(), job)
    assert [t.id for t in registry.active()] == [sync_task.id]

    release.set()
    assert await sync_task.task == "done"
    await asyncio.sleep(0)

    assert sync_task.done is True
    assert registry.active() == []


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_tasks():
    registry = SyncTaskRegistry()

    async def job(token):
        await asyncio.sleep(3600)

    sync_task = registry.start(ADDRESS, "populate", CancellationToken(), job)
    await asyncio.sleep(0)

    await registry.shutdown()

    assert sync_task.task.cancelled()
    assert sync_task.token.reason == "shutdown"
