"""Metadata fetch pipeline.

Fetches per-token metadata in fixed-size batches. Fetches inside a batch run
concurrently; a fixed delay separates batches. A token whose fetch fails is
turned into a typed ``FetchFailure`` and never aborts its siblings.
"""

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from suchmarket.models import FetchErrorType
from suchmarket.services.exceptions import IndexerError, TokenNotFoundError, TransientError
from suchmarket.services.sync.tasks import CancellationToken

logger = structlog.get_logger()


@dataclass
class NFTRecord:
    """Normalized NFT fields ready to upsert."""

    token_id: str
    title: str
    description: str | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None
    metadata: dict[str, Any] | None = None
    attributes: list[Any] = field(default_factory=list)
    media: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class FetchFailure:
    """A token whose metadata could not be fetched."""

    token_id: str
    error_type: FetchErrorType
    message: str


FetchResult = NFTRecord | FetchFailure


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def extract_nft_fields(token_id: str, payload: dict[str, Any]) -> NFTRecord:
    """Normalize an indexer NFT payload into an ``NFTRecord``.

    Understands both the v3 shape (``name``, ``image{}``, ``raw.metadata``) and
    the older v2 shape (``title``, ``media[]``, ``rawMetadata``).

    Image preference: cached URL, then original URL, then the raw metadata's
    ``image`` field. Title falls back to ``"NFT #<tokenId>"``.
    """
    token_id = str(payload.get("tokenId") or token_id)
    raw = payload.get("raw") or {}
    raw_metadata = raw.get("metadata") or payload.get("rawMetadata") or payload.get("metadata")
    if not isinstance(raw_metadata, dict):
        raw_metadata = None
    metadata = raw_metadata or {}

    image = payload.get("image") or {}
    if not isinstance(image, dict):
        image = {}
    media_items = payload.get("media") or []
    first_media = media_items[0] if media_items and isinstance(media_items[0], dict) else {}

    image_url = _first(
        image.get("cachedUrl"),
        first_media.get("gateway"),
        image.get("originalUrl"),
        first_media.get("raw"),
        metadata.get("image"),
    )
    thumbnail_url = _first(image.get("thumbnailUrl"), first_media.get("thumbnail"))

    if media_items:
        media = [
            {
                "gateway": item.get("gateway"),
                "thumbnail": item.get("thumbnail"),
                "raw": item.get("raw"),
                "format": item.get("format") or "image",
                "bytes": item.get("bytes") or 0,
            }
            for item in media_items
            if isinstance(item, dict)
        ]
    elif image_url:
        media = [
            {
                "gateway": image_url,
                "thumbnail": thumbnail_url,
                "raw": _first(image.get("originalUrl"), metadata.get("image")),
                "format": "image",
                "bytes": 0,
            }
        ]
    else:
        media = []

    attributes = metadata.get("attributes")
    if not isinstance(attributes, list):
        attributes = []

    return NFTRecord(
        token_id=token_id,
        title=_first(payload.get("name"), payload.get("title"), metadata.get("name"))
        or f"NFT #{token_id}",
        description=_first(payload.get("description"), metadata.get("description")),
        image_url=image_url,
        thumbnail_url=thumbnail_url,
        metadata=raw_metadata,
        attributes=attributes,
        media=media,
    )


def classify_fetch_error(error: Exception) -> FetchErrorType:
    """Map a fetch exception onto a ledger error type."""
    if isinstance(error, TokenNotFoundError):
        return FetchErrorType.INVALID_TOKEN
    if isinstance(error, (IndexerError, TransientError)):
        return FetchErrorType.METADATA_FETCH
    return FetchErrorType.UNEXPECTED


class MetadataFetcher:
    """Fetches token metadata from the indexer with per-token isolation."""

    def __init__(self, indexer, batch_delay_seconds: float = 1.0):
        """Initialize fetcher.

        Args:
            indexer: Client exposing ``get_nft_metadata(address, token_id)``
            batch_delay_seconds: Pause between consecutive batches
        """
        self.indexer = indexer
        self.batch_delay_seconds = batch_delay_seconds

    async def fetch_one(self, contract_address: str, token_id: str) -> FetchResult:
        try:
            payload = await self.indexer.get_nft_metadata(contract_address, token_id)
            return extract_nft_fields(token_id, payload or {})
        except Exception as e:
            error_type = classify_fetch_error(e)
            logger.warning(
                "fetch.token_failed",
                contract_address=contract_address,
                token_id=token_id,
                ledger_error_type=error_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return FetchFailure(token_id=token_id, error_type=error_type, message=str(e))

    async def iter_batches(
        self,
        contract_address: str,
        token_ids: Sequence[str],
        batch_size: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[list[FetchResult]]:
        """Yield the results of each batch as soon as it completes.

        Args:
            contract_address: Lower-cased contract address
            token_ids: Token IDs to fetch
            batch_size: Tokens per concurrent batch (None = all in one batch)
            cancel_token: Checked before every batch
        """
        ids = list(token_ids)
        size = batch_size or max(len(ids), 1)

        for start in range(0, len(ids), size):
            if cancel_token:
                cancel_token.raise_if_cancelled()
            if start > 0:
                await asyncio.sleep(self.batch_delay_seconds)

            batch = ids[start : start + size]
            results = await asyncio.gather(
                *(self.fetch_one(contract_address, token_id) for token_id in batch)
            )
            logger.info(
                "fetch.batch_complete",
                contract_address=contract_address,
                batch_start=start,
                batch_size=len(batch),
                failed=sum(1 for r in results if isinstance(r, FetchFailure)),
            )
            yield list(results)

    async def fetch_metadata_batch(
        self,
        contract_address: str,
        token_ids: Sequence[str],
        batch_size: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[FetchResult]:
        """Fetch every token and return all results (order not guaranteed)."""
        results: list[FetchResult] = []
        async for batch in self.iter_batches(contract_address, token_ids, batch_size, cancel_token):
            results.extend(batch)
        return results
