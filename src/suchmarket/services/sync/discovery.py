"""Token discovery: which token IDs does a contract have?

Two independent, imperfect enumerators are combined:

- ``FullScanStrategy`` pages through the indexer's contract listing until the
  indexer stops returning a cursor. Indexers miss tokens on contracts with
  non-standard transfer events.
- ``SequentialProbeStrategy`` looks up every ID from 0 to totalSupply-1 one at
  a time. It only runs for small collections with a known supply.

``DiscoveryService`` returns the union of both, so adding the probe can only
increase recall.
"""

import asyncio
from typing import Any

import structlog

from suchmarket.models import Collection
from suchmarket.services.sync.tasks import CancellationToken

logger = structlog.get_logger()


def token_exists(payload: dict[str, Any] | None) -> bool:
    """Decide whether a single-token lookup found a real token.

    Alchemy answers lookups for unminted IDs with a 200 whose ``raw.error`` is
    set and whose metadata is empty.
    """
    if not payload:
        return False
    raw = payload.get("raw") or {}
    if raw.get("error") and not raw.get("metadata") and not payload.get("name"):
        return False
    return payload.get("tokenId") is not None or bool(raw.get("metadata"))


class FullScanStrategy:
    """Walk ``getNFTsForContract`` pages to exhaustion (best effort)."""

    name = "full_scan"

    def __init__(
        self,
        indexer,
        page_size: int = 100,
        page_delay_seconds: float = 0.2,
        max_pages: int | None = None,
    ):
        self.indexer = indexer
        self.page_size = page_size
        self.page_delay_seconds = page_delay_seconds
        self.max_pages = max_pages

    async def discover(
        self,
        contract_address: str,
        collection: Collection | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> set[str]:
        token_ids: set[str] = set()
        page_key: str | None = None
        pages = 0

        while True:
            if cancel_token:
                cancel_token.raise_if_cancelled()
            try:
                page = await self.indexer.get_nfts_for_contract(
                    contract_address, page_size=self.page_size, page_key=page_key
                )
            except Exception as e:
                # Keep what earlier pages produced
                logger.warning(
                    "discovery.full_scan_page_failed",
                    contract_address=contract_address,
                    page=pages,
                    collected=len(token_ids),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                break

            pages += 1
            token_ids.update(page.token_ids)
            page_key = page.page_key

            if not page_key:
                break
            if self.max_pages is not None and pages >= self.max_pages:
                logger.info(
                    "discovery.full_scan_page_cap_reached",
                    contract_address=contract_address,
                    pages=pages,
                )
                break
            await asyncio.sleep(self.page_delay_seconds)

        logger.info(
            "discovery.full_scan_complete",
            contract_address=contract_address,
            pages=pages,
            token_count=len(token_ids),
        )
        return token_ids


class SequentialProbeStrategy:
    """Look up token IDs 0..totalSupply-1 one by one.

    A failed lookup (missing token, revert, indexer error) means "does not
    exist" and is skipped.
    """

    name = "sequential_probe"

    def __init__(self, indexer, supply_threshold: int = 10_000, probe_delay_seconds: float = 0.1):
        self.indexer = indexer
        self.supply_threshold = supply_threshold
        self.probe_delay_seconds = probe_delay_seconds

    def applies_to(self, collection: Collection | None) -> bool:
        if collection is None or collection.total_supply is None:
            return False
        return collection.total_supply < self.supply_threshold

    async def discover(
        self,
        contract_address: str,
        collection: Collection | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> set[str]:
        total_supply = collection.total_supply if collection is not None else None
        if total_supply is None or not self.applies_to(collection):
            logger.debug(
                "discovery.probe_skipped",
                contract_address=contract_address,
                total_supply=total_supply,
            )
            return set()

        token_ids: set[str] = set()
        for candidate in range(total_supply):
            if cancel_token:
                cancel_token.raise_if_cancelled()
            token_id = str(candidate)
            try:
                payload = await self.indexer.get_nft_metadata(contract_address, token_id)
            except Exception as e:
                logger.debug(
                    "discovery.probe_miss",
                    contract_address=contract_address,
                    token_id=token_id,
                    error_type=type(e).__name__,
                )
                payload = None

            if token_exists(payload):
                token_ids.add(token_id)
            await asyncio.sleep(self.probe_delay_seconds)

        logger.info(
            "discovery.probe_complete",
            contract_address=contract_address,
            probed=total_supply,
            token_count=len(token_ids),
        )
        return token_ids


class DiscoveryService:
    """Union of the configured discovery strategies."""

    def __init__(self, strategies):
        self.strategies = list(strategies)

    async def discover_token_ids(
        self,
        contract_address: str,
        collection: Collection | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> set[str]:
        discovered: set[str] = set()
        for strategy in self.strategies:
            found = await strategy.discover(contract_address, collection, cancel_token)
            new_ids = found - discovered
            discovered |= found
            logger.info(
                "discovery.strategy_complete",
                contract_address=contract_address,
                strategy=strategy.name,
                found=len(found),
                new=len(new_ids),
            )
        return discovered
