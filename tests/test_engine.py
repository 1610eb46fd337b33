"""Collection sync engine tests.

Scenarios run against PostgreSQL and Redis containers and a scripted indexer:
- Discovery union persisted without duplicates, re-runs are idempotent
- Cooldown gating after a refresh, lifted once the window passes
- Lock exclusion (same kind and sibling kind) and release on every exit path
- Per-token failures land in the error ledger and clear on later success
- Cache invalidation and the cache event after a successful run
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from suchmarket.core.timezone import utc_now
from suchmarket.models import NFT, Collection, FetchErrorType, NFTFetchError, TokenType
from suchmarket.repositories import CollectionRepository, FetchErrorRepository, NFTRepository
from suchmarket.services.exceptions import (
    CollectionNotFoundError,
    IndexerRateLimitError,
    IndexerUnavailableError,
    InvalidContractAddressError,
    NothingSyncedError,
    RefreshCooldownError,
    RefreshInProgressError,
    SyncCancelledError,
)
from suchmarket.services.indexer.alchemy_client import ContractMetadata
from suchmarket.services.sync.engine import _token_sort_key
from suchmarket.services.sync.keys import populate_lock_key, refresh_lock_key
from suchmarket.services.sync.locks import LockManager
from suchmarket.services.sync.tasks import CancellationToken

ADDRESS = "0xAbCdEf0123456789abcdef0123456789ABCDEF01"
LOWER = ADDRESS.lower()
APP = "such-market"


def fifty_token_indexer(make_indexer, contract_metadata, **kwargs):
    """Indexer listing 0..39 over two pages while 0..49 exist on-chain."""
    return make_indexer(
        pages=[list(range(0, 20)), list(range(20, 40))],
        existing=set(range(50)),
        contract=contract_metadata,
        **kwargs,
    )


async def count_rows(session, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


class StaticContractReader:
    def __init__(self, metadata):
        self.metadata = metadata
        self.calls = 0

    async def read_contract_metadata(self, contract_address):
        self.calls += 1
        return self.metadata


@pytest.mark.asyncio
async def test_populate_persists_union_of_listing_and_probe(
    build_engine, make_indexer, contract_metadata, session
):
    """Listing finds 0..39, the probe over totalSupply=50 finds the rest."""
    engine = build_engine(fifty_token_indexer(make_indexer, contract_metadata))

    result = await engine.populate(ADDRESS)

    assert result.contract_address == LOWER
    assert result.collection_name == "Based Punks"
    assert result.discovered == 50
    assert result.processed == 50
    assert result.failed == 0
    assert result.cooldown_until is None
    assert await count_rows(session, NFT) == 50
    assert await count_rows(session, NFTFetchError) == 0


@pytest.mark.asyncio
async def test_populate_twice_is_idempotent(
    build_engine, make_indexer, contract_metadata, session
):
    engine = build_engine(fifty_token_indexer(make_indexer, contract_metadata))

    await engine.populate(ADDRESS)
    second = await engine.populate(ADDRESS)

    assert second.processed == 50
    assert await count_rows(session, NFT) == 50


@pytest.mark.asyncio
async def test_collection_registered_from_indexer(build_engine, make_indexer, contract_metadata):
    indexer = fifty_token_indexer(make_indexer, contract_metadata)
    engine = build_engine(indexer)

    collection = await engine.ensure_collection(ADDRESS)
    again = await engine.ensure_collection(LOWER)

    assert collection.contract_address == LOWER
    assert collection.token_type == TokenType.ERC721
    assert collection.total_supply == 50
    assert again.id == collection.id
    assert indexer.contract_calls == 1


@pytest.mark.asyncio
async def test_collection_falls_back_to_chain_reads(build_engine, make_indexer):
    reader = StaticContractReader(
        ContractMetadata(name="OnChain", symbol="OC", token_type="ERC1155", total_supply=None)
    )
    engine = build_engine(make_indexer(pages=[[1]]), contract_reader=reader)

    collection = await engine.ensure_collection(ADDRESS)

    assert reader.calls == 1
    assert collection.name == "OnChain"
    assert collection.token_type == TokenType.ERC1155


@pytest.mark.asyncio
async def test_unknown_contract_is_not_found_and_lock_released(
    build_engine, make_indexer, redis_client
):
    engine = build_engine(make_indexer(), contract_reader=StaticContractReader(None))

    with pytest.raises(CollectionNotFoundError):
        await engine.refresh(ADDRESS)

    assert await LockManager(redis_client).is_locked(refresh_lock_key(APP, LOWER)) is False


@pytest.mark.asyncio
async def test_invalid_address_rejected_before_locking(build_engine, make_indexer, redis_client):
    engine = build_engine(make_indexer())

    with pytest.raises(InvalidContractAddressError):
        await engine.refresh("0x1234")

    assert await redis_client.keys("*") == []


@pytest.mark.asyncio
async def test_refresh_sets_cooldown_then_rejects(build_engine, make_indexer, contract_metadata):
    engine = build_engine(make_indexer(pages=[[1, 2, 3]], contract=contract_metadata))

    result = await engine.refresh(ADDRESS)

    assert result.processed == 3
    assert result.cooldown_until is not None
    assert result.cooldown_until > utc_now() + timedelta(seconds=290)

    with pytest.raises(RefreshCooldownError) as exc_info:
        await engine.refresh(ADDRESS)
    assert exc_info.value.remaining_minutes > 0
    assert exc_info.value.remaining_minutes <= 5


@pytest.mark.asyncio
async def test_refresh_allowed_after_cooldown_elapses(
    build_engine, make_indexer, contract_metadata, uow_factory
):
    engine = build_engine(make_indexer(pages=[[1, 2, 3]], contract=contract_metadata))
    first = await engine.refresh(ADDRESS)

    async with await uow_factory() as uow:
        await uow.collections.set_cooldown(first.collection_id, utc_now() - timedelta(seconds=1))

    second = await engine.refresh(ADDRESS)

    assert second.processed == 3


@pytest.mark.asyncio
async def test_refresh_skips_probe_and_caps_pages(build_engine, make_indexer, contract_metadata):
    indexer = make_indexer(
        pages=[[i] for i in range(8)], existing=set(range(50)), contract=contract_metadata
    )
    engine = build_engine(indexer, refresh_max_pages=3)

    result = await engine.refresh(ADDRESS)

    assert result.discovered == 3
    # Only the three fetched tokens were looked up; no probe over totalSupply
    assert sorted(indexer.metadata_calls, key=int) == ["0", "1", "2"]


@pytest.mark.asyncio
async def test_concurrent_refreshes_only_one_runs(build_engine, make_indexer, contract_metadata):
    engine = build_engine(make_indexer(pages=[[1, 2, 3]], contract=contract_metadata))

    results = await asyncio.gather(
        engine.refresh(ADDRESS), engine.refresh(ADDRESS), return_exceptions=True
    )

    rejected = [r for r in results if isinstance(r, RefreshInProgressError)]
    completed = [r for r in results if not isinstance(r, Exception)]
    assert len(rejected) == 1
    assert len(completed) == 1
    assert str(rejected[0]) == "Refresh already in progress"


@pytest.mark.asyncio
async def test_refresh_rejected_while_populate_holds_lock(
    build_engine, make_indexer, contract_metadata, redis_client
):
    other_process = LockManager(redis_client)
    await other_process.try_acquire(populate_lock_key(APP, LOWER), 1800)
    engine = build_engine(make_indexer(pages=[[1]], contract=contract_metadata))

    with pytest.raises(RefreshInProgressError):
        await engine.refresh(ADDRESS)

    # The refresh lock taken during the check is handed back
    assert await other_process.is_locked(refresh_lock_key(APP, LOWER)) is False


@pytest.mark.asyncio
async def test_populate_rejected_while_refresh_holds_lock(
    build_engine, make_indexer, contract_metadata, redis_client
):
    await LockManager(redis_client).try_acquire(refresh_lock_key(APP, LOWER), 300)
    engine = build_engine(make_indexer(pages=[[1]], contract=contract_metadata))

    with pytest.raises(RefreshInProgressError, match="Population already in progress"):
        await engine.start_populate(ADDRESS)


@pytest.mark.asyncio
async def test_partial_failures_recorded_then_cleared(
    build_engine, make_indexer, contract_metadata, uow_factory
):
    indexer = fifty_token_indexer(
        make_indexer, contract_metadata, failing={3: IndexerRateLimitError("429")}
    )
    engine = build_engine(indexer)

    result = await engine.populate(ADDRESS)

    assert result.processed == 49
    assert result.failed == 1
    async with await uow_factory() as uow:
        row = await uow.fetch_errors.get(result.collection_id, "3", "metadata_fetch")
    assert row is not None
    assert row.retry_count == 1

    indexer.failing = {}
    await engine.populate(ADDRESS)

    async with await uow_factory() as uow:
        assert await uow.fetch_errors.list_for_collection(result.collection_id) == []
        assert await uow.nfts.count_for_collection(result.collection_id) == 50


@pytest.mark.asyncio
async def test_all_tokens_failing_raises_without_cooldown(
    build_engine, make_indexer, contract_metadata, uow_factory
):
    indexer = make_indexer(
        pages=[[0, 1]],
        contract=contract_metadata,
        failing={0: IndexerUnavailableError("503"), 1: IndexerUnavailableError("503")},
    )
    engine = build_engine(indexer)

    with pytest.raises(NothingSyncedError) as exc_info:
        await engine.refresh(ADDRESS)

    assert exc_info.value.discovered == 2
    assert exc_info.value.failed == 2
    collection = await engine.get_collection(ADDRESS)
    assert collection.refresh_cooldown_until is None
    async with await uow_factory() as uow:
        assert len(await uow.fetch_errors.list_for_collection(collection.id)) == 2


@pytest.mark.asyncio
async def test_empty_collection_succeeds(build_engine, make_indexer, contract_metadata):
    engine = build_engine(make_indexer(pages=[], contract=contract_metadata))

    result = await engine.refresh(ADDRESS)

    assert result.discovered == 0
    assert result.processed == 0


@pytest.mark.asyncio
async def test_runs_without_key_value_store(
    build_engine, make_indexer, contract_metadata, unreachable_redis, session
):
    """Locks, invalidation and events fail open when the store is down."""
    engine = build_engine(
        make_indexer(pages=[[1, 2]], contract=contract_metadata), redis=unreachable_redis
    )

    result = await engine.refresh(ADDRESS)

    assert result.processed == 2
    assert await count_rows(session, NFT) == 2


@pytest.mark.asyncio
async def test_success_invalidates_cache_and_emits_event(
    build_engine, make_indexer, contract_metadata, redis_client, cache_events
):
    await redis_client.set(f"{APP}:collection:{LOWER}:page:1", "cached")
    await redis_client.set(f"{APP}:collection:{LOWER}:stats", "cached")
    await redis_client.set(f"{APP}:ownership:{LOWER}:7", "cached")
    other = f"{APP}:collection:0x{'1' * 40}:page:1"
    await redis_client.set(other, "cached")
    engine = build_engine(make_indexer(pages=[[1]], contract=contract_metadata))

    await engine.refresh(ADDRESS)

    assert await redis_client.keys("*") == [other]
    events = await cache_events()
    assert len(events) == 1
    payload = events[0]
    assert payload["type"] == "collection_refreshed"
    assert payload["data"] == {"contractAddress": LOWER, "reason": "manual_refresh"}


@pytest.mark.asyncio
async def test_failed_run_does_not_invalidate(
    build_engine, make_indexer, contract_metadata, redis_client, cache_events
):
    cached = f"{APP}:collection:{LOWER}:page:1"
    await redis_client.set(cached, "cached")
    indexer = make_indexer(
        pages=[[0]], contract=contract_metadata, failing={0: IndexerUnavailableError("503")}
    )
    engine = build_engine(indexer)

    with pytest.raises(NothingSyncedError):
        await engine.refresh(ADDRESS)

    assert await redis_client.exists(cached) == 1
    assert await cache_events() == []


@pytest.mark.asyncio
async def test_background_populate_completes_and_releases_lock(
    build_engine, make_indexer, contract_metadata, redis_client, session
):
    engine = build_engine(fifty_token_indexer(make_indexer, contract_metadata))

    ticket = await engine.start_populate(ADDRESS)
    assert ticket.collection.contract_address == LOWER
    assert await LockManager(redis_client).is_locked(populate_lock_key(APP, LOWER)) is True

    result = await ticket.task.task

    assert result.processed == 50
    assert await count_rows(session, NFT) == 50
    assert await LockManager(redis_client).is_locked(populate_lock_key(APP, LOWER)) is False
    assert engine.task_registry.active() == []


@pytest.mark.asyncio
async def test_second_populate_rejected_while_first_runs(
    build_engine, make_indexer, contract_metadata
):
    engine = build_engine(fifty_token_indexer(make_indexer, contract_metadata))

    ticket = await engine.start_populate(ADDRESS)
    with pytest.raises(RefreshInProgressError, match="Population already in progress"):
        await engine.start_populate(ADDRESS)

    await ticket.task.task


@pytest.mark.asyncio
async def test_expired_authority_abandons_run(
    build_engine, make_indexer, contract_metadata, redis_client, session
):
    """A job whose lock TTL has passed stops before writing anything."""
    ticks = iter([0.0])
    token = CancellationToken(ttl_seconds=10, clock=lambda: next(ticks, 100.0))
    engine = build_engine(fifty_token_indexer(make_indexer, contract_metadata))

    with pytest.raises(SyncCancelledError):
        await engine.populate(ADDRESS, cancel_token=token)

    assert token.reason == "lock_expired"
    assert await count_rows(session, NFT) == 0
    assert await LockManager(redis_client).is_locked(populate_lock_key(APP, LOWER)) is False


@pytest.mark.asyncio
async def test_refresh_status_reports_cooldown(build_engine, make_indexer, contract_metadata):
    engine = build_engine(make_indexer(pages=[[1]], contract=contract_metadata))

    before = await engine.refresh_status(ADDRESS)
    assert before.can_run is True
    assert before.collection is None

    await engine.refresh(ADDRESS)
    after = await engine.refresh_status(ADDRESS)

    assert after.can_run is False
    assert after.remaining_minutes == 5
    assert after.collection.contract_address == LOWER
    assert (await engine.populate_status(ADDRESS)).can_run is True


@pytest.mark.asyncio
async def test_populate_status_reports_held_lock(
    build_engine, make_indexer, contract_metadata, redis_client
):
    await LockManager(redis_client).try_acquire(populate_lock_key(APP, LOWER), 1800)
    engine = build_engine(make_indexer(contract=contract_metadata))

    status = await engine.populate_status(ADDRESS)

    assert status.can_run is False
    assert status.remaining_minutes == 30
    assert status.next_time is not None


class SteppedClock:
    """Monotonic clock that only moves when a test moves it."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_lock_expiring_during_registration_cancels_run(
    build_engine, make_indexer, contract_metadata, redis_client, session
):
    """Time spent registering the collection counts against the lock TTL."""
    clock = SteppedClock()
    indexer = fifty_token_indexer(make_indexer, contract_metadata)
    lookup = indexer.get_contract_metadata

    async def slow_lookup(contract_address):
        clock.now += 2
        return await lookup(contract_address)

    indexer.get_contract_metadata = slow_lookup
    engine = build_engine(indexer, clock=clock, populate_lock_ttl_seconds=1)

    with pytest.raises(SyncCancelledError):
        await engine.populate(ADDRESS)

    assert indexer.page_calls == []
    assert await count_rows(session, Collection) == 0
    assert await count_rows(session, NFT) == 0
    assert await redis_client.exists(populate_lock_key(APP, LOWER)) == 0


@pytest.mark.asyncio
async def test_background_populate_rejected_when_registration_outlives_lock(
    build_engine, make_indexer, contract_metadata, redis_client
):
    clock = SteppedClock()
    indexer = fifty_token_indexer(make_indexer, contract_metadata)
    lookup = indexer.get_contract_metadata

    async def slow_lookup(contract_address):
        clock.now += 5
        return await lookup(contract_address)

    indexer.get_contract_metadata = slow_lookup
    engine = build_engine(indexer, clock=clock, populate_lock_ttl_seconds=1)

    with pytest.raises(SyncCancelledError):
        await engine.start_populate(ADDRESS)

    assert engine.task_registry.active() == []
    assert await redis_client.exists(populate_lock_key(APP, LOWER)) == 0


@pytest.mark.asyncio
async def test_row_that_cannot_be_stored_lands_in_ledger(
    build_engine, make_indexer, contract_metadata, uow_factory, monkeypatch
):
    """A row the database rejects is counted as failed; its batch mates are kept."""
    build_row = NFTRepository._row

    def orphan_token_three(collection_id, record):
        row = build_row(collection_id, record)
        if row["token_id"] == "3":
            # Foreign key violation on insert
            row["collection_id"] = uuid4()
        return row

    monkeypatch.setattr(NFTRepository, "_row", staticmethod(orphan_token_three))
    engine = build_engine(make_indexer(pages=[[1, 2, 3]], contract=contract_metadata))

    result = await engine.refresh(ADDRESS)

    assert result.processed == 2
    assert result.failed == 1
    async with await uow_factory() as uow:
        assert sorted(await uow.nfts.list_token_ids(result.collection_id)) == ["1", "2"]
        row = await uow.fetch_errors.get(result.collection_id, "3", FetchErrorType.PERSISTENCE)
    assert row is not None
    assert row.error_type == "persistence"
    assert row.retry_count == 1


@pytest.mark.asyncio
async def test_batch_transaction_failure_counts_whole_batch(
    build_engine, make_indexer, contract_metadata, session, monkeypatch
):
    async def broken_clear(self, collection_id, token_ids):
        raise OperationalError("DELETE FROM nft_fetch_errors", {}, Exception("connection reset"))

    monkeypatch.setattr(FetchErrorRepository, "clear_for_tokens", broken_clear)
    engine = build_engine(make_indexer(pages=[[1, 2]], contract=contract_metadata))

    with pytest.raises(NothingSyncedError) as exc_info:
        await engine.refresh(ADDRESS)

    assert exc_info.value.failed == 2
    # The batch's NFT rows were rolled back with it
    assert await count_rows(session, NFT) == 0


@pytest.mark.asyncio
async def test_failed_refresh_stamp_keeps_written_nfts(
    build_engine, make_indexer, contract_metadata, uow_factory, monkeypatch
):
    async def broken_stamp(self, collection_id, at=None):
        raise OperationalError("UPDATE collections", {}, Exception("connection reset"))

    monkeypatch.setattr(CollectionRepository, "mark_refreshed", broken_stamp)
    engine = build_engine(make_indexer(pages=[[1, 2]], contract=contract_metadata))

    result = await engine.refresh(ADDRESS)

    assert result.processed == 2
    assert result.cooldown_until is not None
    async with await uow_factory() as uow:
        assert await uow.nfts.count_for_collection(result.collection_id) == 2
        collection = await uow.collections.get_by_id(result.collection_id)
    assert collection.last_refresh_at is None


def test_token_ids_sort_numerically_before_other_ids():
    token_ids = ["10", "abc", "2", "²", "0x1f", "1", "٣"]

    assert sorted(token_ids, key=_token_sort_key) == [
        "1",
        "2",
        "10",
        "0x1f",
        "abc",
        "²",
        "٣",
    ]
