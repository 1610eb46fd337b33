"""Collection sync engine.

One parameterized pipeline serves both entry points:

    lock → (sibling lock) → ensure collection → cooldown → discover
         → fetch + persist per batch → cooldown → invalidate + emit → release

``refresh`` runs it inline for the caller. ``start_populate`` acquires the
lock, registers the collection and hands the rest to a background task whose
cancellation token expires with the lock.
"""

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from suchmarket.core.config import Settings
from suchmarket.core.timezone import utc_now
from suchmarket.models import Collection, FetchErrorType, TokenType
from suchmarket.services.exceptions import (
    ChainReadError,
    CollectionNotFoundError,
    NothingSyncedError,
    RefreshCooldownError,
    RefreshInProgressError,
    ServiceError,
    SyncCancelledError,
)
from suchmarket.services.indexer.alchemy_client import ContractMetadata
from suchmarket.services.sync.cache_bus import CacheEvent, CacheInvalidationBus
from suchmarket.services.sync.cooldown import CooldownScheduler
from suchmarket.services.sync.discovery import (
    DiscoveryService,
    FullScanStrategy,
    SequentialProbeStrategy,
)
from suchmarket.services.sync.fetcher import FetchFailure, MetadataFetcher, NFTRecord
from suchmarket.services.sync.keys import normalize_contract_address
from suchmarket.services.sync.locks import LockManager
from suchmarket.services.sync.profiles import SyncProfile
from suchmarket.services.sync.tasks import CancellationToken, SyncTask, SyncTaskRegistry

logger = structlog.get_logger()


@dataclass
class SyncResult:
    """Outcome of a completed sync run."""

    contract_address: str
    collection_id: UUID
    collection_name: str
    discovered: int
    processed: int
    failed: int
    cooldown_until: datetime | None = None


@dataclass
class PopulateTicket:
    """Acknowledgment returned when a background populate starts."""

    collection: Collection
    task: SyncTask


@dataclass
class SyncStatus:
    """Whether a sync kind may run now for a collection."""

    can_run: bool
    next_time: datetime | None
    remaining_minutes: int
    collection: Collection | None


def _token_sort_key(token_id: str):
    if token_id.isascii() and token_id.isdigit():
        return (0, int(token_id), "")
    return (1, 0, token_id)


class CollectionSyncEngine:
    """Discovers, fetches and persists a collection's NFTs under a lock."""

    def __init__(
        self,
        uow_factory,
        indexer,
        locks: LockManager,
        cache_bus: CacheInvalidationBus,
        settings: Settings,
        contract_reader=None,
        task_registry: SyncTaskRegistry | None = None,
        cooldown: CooldownScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize sync engine.

        Args:
            uow_factory: Factory returning UnitOfWork instances
            indexer: Indexer client (``AlchemyClient`` or a compatible fake)
            locks: Per-collection lock manager
            cache_bus: Cache invalidation bus
            settings: Application settings (TTLs, page sizes, delays)
            contract_reader: Optional on-chain fallback for collection metadata
            task_registry: Registry for background populate tasks
            cooldown: Cooldown scheduler
            clock: Monotonic clock for lock authority deadlines
        """
        self.uow_factory = uow_factory
        self.indexer = indexer
        self.locks = locks
        self.cache_bus = cache_bus
        self.settings = settings
        self.contract_reader = contract_reader
        self.task_registry = task_registry or SyncTaskRegistry()
        self.cooldown = cooldown or CooldownScheduler()
        self.clock = clock
        self.fetcher = MetadataFetcher(indexer, settings.fetch_batch_delay_seconds)

    def discovery_for(self, profile: SyncProfile) -> DiscoveryService:
        strategies: list = [
            FullScanStrategy(
                self.indexer,
                page_size=profile.page_size,
                page_delay_seconds=self.settings.scan_page_delay_seconds,
                max_pages=profile.max_pages,
            )
        ]
        if profile.use_probe:
            strategies.append(
                SequentialProbeStrategy(
                    self.indexer,
                    supply_threshold=self.settings.probe_supply_threshold,
                    probe_delay_seconds=self.settings.probe_delay_seconds,
                )
            )
        return DiscoveryService(strategies)

    async def get_collection(self, contract_address: str) -> Collection | None:
        address = normalize_contract_address(contract_address)
        async with await self.uow_factory() as uow:
            return await uow.collections.get_by_address(address)

    async def ensure_collection(
        self, contract_address: str, cancel_token: CancellationToken | None = None
    ) -> Collection:
        """Return the stored collection, registering it on first sight.

        Contract metadata comes from the indexer, falling back to on-chain
        reads when the indexer cannot describe the contract.

        Raises:
            CollectionNotFoundError: Neither source knows the contract
            SyncCancelledError: The caller's lock expired during the lookup
        """
        address = normalize_contract_address(contract_address)
        existing = await self.get_collection(address)
        if existing is not None:
            return existing

        metadata = await self._lookup_contract_metadata(address)
        if metadata is None:
            raise CollectionNotFoundError(
                f"Collection {address} not found and could not be fetched"
            )

        if cancel_token:
            cancel_token.raise_if_cancelled()

        async with await self.uow_factory() as uow:
            collection = await uow.collections.upsert(
                address,
                name=metadata.name,
                token_type=TokenType.parse(metadata.token_type),
                total_supply=metadata.total_supply,
            )

        logger.info(
            "sync.collection_registered",
            contract_address=address,
            collection_id=str(collection.id),
            name=collection.name,
            token_type=collection.token_type.value,
            total_supply=collection.total_supply,
        )
        return collection

    async def _lookup_contract_metadata(self, address: str) -> ContractMetadata | None:
        metadata = None
        try:
            metadata = await self.indexer.get_contract_metadata(address)
        except ServiceError as e:
            logger.warning(
                "sync.indexer_contract_lookup_failed",
                contract_address=address,
                error=str(e),
                error_type=type(e).__name__,
            )

        if metadata is None and self.contract_reader is not None:
            try:
                metadata = await self.contract_reader.read_contract_metadata(address)
            except ChainReadError as e:
                logger.warning(
                    "sync.chain_contract_lookup_failed",
                    contract_address=address,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return metadata

    async def _acquire(
        self, profile: SyncProfile, address: str
    ) -> tuple[str, CancellationToken]:
        app_name = self.settings.app_name
        lock_key = profile.lock_key(app_name, address)
        if not await self.locks.try_acquire(lock_key, profile.lock_ttl_seconds):
            raise RefreshInProgressError(profile.busy_message)
        # Deadline starts when the lock is taken
        token = CancellationToken(profile.lock_ttl_seconds, clock=self.clock)

        if await self.locks.is_locked(profile.sibling_lock_key(app_name, address)):
            await self.locks.release(lock_key)
            logger.info("sync.sibling_lock_held", contract_address=address, kind=profile.kind)
            raise RefreshInProgressError(profile.busy_message)
        return lock_key, token

    async def refresh(self, contract_address: str) -> SyncResult:
        """Run a light refresh inline.

        Raises:
            InvalidContractAddressError: Malformed address
            RefreshInProgressError: Refresh or populate lock held
            CollectionNotFoundError: Unknown contract
            RefreshCooldownError: Refreshed too recently
            NothingSyncedError: Tokens were discovered but none could be stored
        """
        address = normalize_contract_address(contract_address)
        profile = SyncProfile.refresh(self.settings)
        lock_key, token = await self._acquire(profile, address)
        try:
            collection = await self.ensure_collection(address, token)

            status = self.cooldown.is_in_cooldown(collection)
            if status.in_cooldown and status.until is not None:
                logger.info(
                    "sync.refresh_in_cooldown",
                    contract_address=address,
                    cooldown_until=status.until.isoformat(),
                )
                raise RefreshCooldownError(status.until, status.remaining_minutes)

            return await self._run(profile, collection, token)
        finally:
            await self.locks.release(lock_key)

    async def populate(
        self, contract_address: str, cancel_token: CancellationToken | None = None
    ) -> SyncResult:
        """Run a comprehensive populate inline (used by tooling and tests)."""
        address = normalize_contract_address(contract_address)
        profile = SyncProfile.populate(self.settings)
        lock_key, token = await self._acquire(profile, address)
        token = cancel_token or token
        try:
            collection = await self.ensure_collection(address, token)
            return await self._run(profile, collection, token)
        finally:
            await self.locks.release(lock_key)

    async def start_populate(self, contract_address: str) -> PopulateTicket:
        """Acquire the populate lock and continue the populate in the background.

        The lock is released by the background task when it finishes, fails
        or is cancelled. Errors before the task starts release it here.
        """
        address = normalize_contract_address(contract_address)
        profile = SyncProfile.populate(self.settings)
        lock_key, token = await self._acquire(profile, address)
        try:
            collection = await self.ensure_collection(address, token)
        except BaseException:
            await self.locks.release(lock_key)
            raise

        async def job(cancel_token: CancellationToken):
            return await self._background_populate(profile, collection, lock_key, cancel_token)

        task = self.task_registry.start(address, profile.kind, token, job)
        return PopulateTicket(collection=collection, task=task)

    async def _background_populate(
        self,
        profile: SyncProfile,
        collection: Collection,
        lock_key: str,
        cancel_token: CancellationToken,
    ) -> SyncResult | None:
        address = collection.contract_address
        try:
            return await self._run(profile, collection, cancel_token)
        except SyncCancelledError as e:
            logger.warning("sync.populate_cancelled", contract_address=address, reason=str(e))
        except asyncio.CancelledError:
            logger.warning("sync.populate_task_cancelled", contract_address=address)
            raise
        except Exception as e:
            # Nothing awaits a background task; the log is the only record
            logger.error(
                "sync.populate_failed",
                contract_address=address,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
        finally:
            await self.locks.release(lock_key)
        return None

    async def _run(
        self, profile: SyncProfile, collection: Collection, cancel_token: CancellationToken
    ) -> SyncResult:
        address = collection.contract_address
        log = logger.bind(contract_address=address, kind=profile.kind)
        log.info("sync.started", collection_id=str(collection.id))

        discovered = await self.discovery_for(profile).discover_token_ids(
            address, collection, cancel_token
        )
        token_ids = sorted(discovered, key=_token_sort_key)
        log.info("sync.discovered", token_count=len(token_ids))

        processed = 0
        failed = 0
        async for batch in self.fetcher.iter_batches(
            address, token_ids, profile.batch_size, cancel_token
        ):
            cancel_token.raise_if_cancelled()
            written, batch_failed = await self._persist_batch(collection.id, batch)
            processed += written
            failed += batch_failed

        if token_ids and processed == 0:
            log.error("sync.nothing_synced", discovered=len(token_ids), failed=failed)
            raise NothingSyncedError(len(token_ids), failed)

        cancel_token.raise_if_cancelled()
        await self._mark_refreshed(collection.id)

        cooldown_until = None
        if profile.cooldown_seconds:
            async with await self.uow_factory() as uow:
                cooldown_until = await self.cooldown.set_cooldown(
                    uow, collection.id, profile.cooldown_seconds
                )

        await self.cache_bus.invalidate_collection(address)
        await self.cache_bus.emit(CacheEvent(contract_address=address, reason=profile.event_reason))

        log.info(
            "sync.completed",
            discovered=len(token_ids),
            processed=processed,
            failed=failed,
            cooldown_until=cooldown_until.isoformat() if cooldown_until else None,
        )
        return SyncResult(
            contract_address=address,
            collection_id=collection.id,
            collection_name=collection.name,
            discovered=len(token_ids),
            processed=processed,
            failed=failed,
            cooldown_until=cooldown_until,
        )

    async def _persist_batch(self, collection_id: UUID, batch: list) -> tuple[int, int]:
        """Write one fetch batch in its own transaction.

        Returns:
            (written, failed) counts for the batch
        """
        records = [r for r in batch if isinstance(r, NFTRecord)]
        failures = [r for r in batch if isinstance(r, FetchFailure)]

        try:
            async with await self.uow_factory() as uow:
                result = await uow.nfts.upsert_many(collection_id, records)
                await uow.fetch_errors.clear_for_tokens(collection_id, result.written_token_ids)
                for failure in failures:
                    await uow.fetch_errors.record_failure(
                        collection_id, failure.token_id, failure.error_type, failure.message
                    )
                for token_id in result.failed_token_ids:
                    await uow.fetch_errors.record_failure(
                        collection_id,
                        token_id,
                        FetchErrorType.PERSISTENCE,
                        "Failed to upsert NFT row",
                    )
        except SQLAlchemyError as e:
            logger.error(
                "sync.batch_persist_failed",
                collection_id=str(collection_id),
                batch_size=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
            return 0, len(batch)

        return result.written, len(failures) + result.failed

    async def _mark_refreshed(self, collection_id: UUID) -> None:
        """Stamp last_refresh_at; failure never undoes committed NFT writes."""
        try:
            async with await self.uow_factory() as uow:
                await uow.collections.mark_refreshed(collection_id)
        except SQLAlchemyError as e:
            logger.warning(
                "sync.mark_refreshed_failed",
                collection_id=str(collection_id),
                error=str(e),
                error_type=type(e).__name__,
            )

    async def refresh_status(self, contract_address: str) -> SyncStatus:
        """Whether a refresh may run now (lock free and cooldown elapsed)."""
        address = normalize_contract_address(contract_address)
        profile = SyncProfile.refresh(self.settings)
        collection = await self.get_collection(address)

        blocked_until = await self._lock_expiry(profile.lock_key(self.settings.app_name, address))
        if collection is not None:
            cooldown = self.cooldown.is_in_cooldown(collection)
            if cooldown.in_cooldown and (blocked_until is None or cooldown.until > blocked_until):
                blocked_until = cooldown.until
        return self._status(blocked_until, collection)

    async def populate_status(self, contract_address: str) -> SyncStatus:
        """Whether a populate may run now (populate lock free)."""
        address = normalize_contract_address(contract_address)
        profile = SyncProfile.populate(self.settings)
        collection = await self.get_collection(address)
        blocked_until = await self._lock_expiry(profile.lock_key(self.settings.app_name, address))
        return self._status(blocked_until, collection)

    async def _lock_expiry(self, lock_key: str) -> datetime | None:
        remaining = await self.locks.remaining_seconds(lock_key)
        if remaining is None:
            return None
        return utc_now() + timedelta(seconds=remaining)

    @staticmethod
    def _status(blocked_until: datetime | None, collection: Collection | None) -> SyncStatus:
        if blocked_until is None:
            return SyncStatus(
                can_run=True, next_time=None, remaining_minutes=0, collection=collection
            )
        remaining = max((blocked_until - utc_now()).total_seconds(), 0)
        return SyncStatus(
            can_run=False,
            next_time=blocked_until,
            remaining_minutes=math.ceil(remaining / 60),
            collection=collection,
        )
