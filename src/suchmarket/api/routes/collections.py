"""Collection sync API endpoints.

This module implements the per-collection sync endpoints:
- POST /api/collection/{address}/refresh - Light refresh, caller waits for the result
- GET /api/collection/{address}/refresh - Whether a refresh may run now
- POST /api/collection/{address}/populate - Comprehensive populate in the background
- GET /api/collection/{address}/populate - Whether a populate may run now

Contention (lock held, cooldown active) is answered with 429 and the remaining
wait so clients can back off.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from suchmarket.api.dependencies import get_sync_engine
from suchmarket.models import Collection
from suchmarket.services.exceptions import (
    CollectionNotFoundError,
    InvalidContractAddressError,
    NothingSyncedError,
    RefreshCooldownError,
    RefreshInProgressError,
)
from suchmarket.services.sync.engine import CollectionSyncEngine, SyncStatus

logger = structlog.get_logger()
router = APIRouter(prefix="/api/collection", tags=["collections"])


# Request/Response Models


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RefreshResponse(CamelModel):
    """Response model for a completed refresh."""

    success: bool = Field(..., description="True if the refresh made progress")
    message: str = Field(..., description="Human-readable summary")
    nfts_discovered: int = Field(..., alias="nftsDiscovered")
    nfts_processed: int = Field(..., alias="nftsProcessed")
    nfts_failed: int = Field(..., alias="nftsFailed")
    cooldown_until: datetime | None = Field(default=None, alias="cooldownUntil")


class PopulateResponse(CamelModel):
    """Acknowledgment that a background populate started."""

    success: bool
    message: str
    collection_id: UUID = Field(..., alias="collectionId")
    collection_name: str = Field(..., alias="collectionName")


class CollectionSummary(CamelModel):
    id: UUID
    name: str
    token_type: str = Field(..., alias="tokenType")
    last_refresh: datetime | None = Field(default=None, alias="lastRefresh")

    @classmethod
    def from_collection(cls, collection: Collection | None) -> "CollectionSummary | None":
        if collection is None:
            return None
        return cls(
            id=collection.id,
            name=collection.name,
            token_type=collection.token_type.value,
            last_refresh=collection.last_refresh_at,
        )


class RefreshStatusResponse(CamelModel):
    can_refresh: bool = Field(..., alias="canRefresh")
    next_refresh_time: datetime | None = Field(default=None, alias="nextRefreshTime")
    remaining_time: int = Field(..., alias="remainingTime", description="Minutes")
    collection: CollectionSummary | None = None


class PopulateStatusResponse(CamelModel):
    can_populate: bool = Field(..., alias="canPopulate")
    next_populate_time: datetime | None = Field(default=None, alias="nextPopulateTime")
    remaining_time: int = Field(..., alias="remainingTime", description="Minutes")
    collection: CollectionSummary | None = None


def _error(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content)


def _invalid_address() -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, {"error": "Invalid contract address"})


def _in_progress(e: RefreshInProgressError) -> JSONResponse:
    return _error(status.HTTP_429_TOO_MANY_REQUESTS, {"error": str(e)})


def _not_found() -> JSONResponse:
    return _error(
        status.HTTP_404_NOT_FOUND, {"error": "Collection not found and could not be fetched"}
    )


def _internal_error(e: Exception) -> JSONResponse:
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"error": "Internal server error", "details": str(e)},
    )


@router.post("/{contract_address}/refresh", response_model=RefreshResponse)
async def refresh_collection(
    contract_address: str,
    engine: CollectionSyncEngine = Depends(get_sync_engine),
):
    """Refresh a collection's NFTs and wait for the result.

    Returns:
        200 with discovered/processed/failed counts and the new cooldown

    Error responses:
        400: malformed contract address
        404: collection unknown to both the indexer and the chain
        429: refresh/populate in progress, or refresh in cooldown
        500: unexpected failure, or no discovered token could be stored
    """
    try:
        result = await engine.refresh(contract_address)
    except InvalidContractAddressError:
        return _invalid_address()
    except RefreshInProgressError as e:
        return _in_progress(e)
    except CollectionNotFoundError:
        return _not_found()
    except RefreshCooldownError as e:
        return _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            {
                "error": "Collection refresh in cooldown",
                "cooldownUntil": e.cooldown_until.isoformat(),
                "remainingMinutes": e.remaining_minutes,
            },
        )
    except NothingSyncedError as e:
        logger.error("api.refresh_nothing_synced", contract_address=contract_address)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            {
                "error": "No NFTs could be synced",
                "details": str(e),
                "nftsDiscovered": e.discovered,
                "nftsFailed": e.failed,
            },
        )
    except Exception as e:
        logger.error(
            "api.refresh_failed",
            contract_address=contract_address,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return _internal_error(e)

    return RefreshResponse(
        success=True,
        message=f"Collection refreshed: {result.processed} of {result.discovered} NFTs processed",
        nfts_discovered=result.discovered,
        nfts_processed=result.processed,
        nfts_failed=result.failed,
        cooldown_until=result.cooldown_until,
    )


@router.get("/{contract_address}/refresh", response_model=RefreshStatusResponse)
async def get_refresh_status(
    contract_address: str,
    engine: CollectionSyncEngine = Depends(get_sync_engine),
):
    """Report whether a refresh may run now and when the next one is allowed."""
    try:
        sync_status = await engine.refresh_status(contract_address)
    except InvalidContractAddressError:
        return _invalid_address()
    except Exception as e:
        logger.error(
            "api.refresh_status_failed",
            contract_address=contract_address,
            error=str(e),
            error_type=type(e).__name__,
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": "Failed to check refresh status"}
        )

    return RefreshStatusResponse(
        can_refresh=sync_status.can_run,
        next_refresh_time=sync_status.next_time,
        remaining_time=sync_status.remaining_minutes,
        collection=CollectionSummary.from_collection(sync_status.collection),
    )


@router.post("/{contract_address}/populate", response_model=PopulateResponse)
async def populate_collection(
    contract_address: str,
    engine: CollectionSyncEngine = Depends(get_sync_engine),
):
    """Start a comprehensive populate and return immediately.

    Discovery and metadata fetching continue in a background task that holds
    the populate lock until it finishes or its lock expires.
    """
    try:
        ticket = await engine.start_populate(contract_address)
    except InvalidContractAddressError:
        return _invalid_address()
    except RefreshInProgressError as e:
        return _in_progress(e)
    except CollectionNotFoundError:
        return _not_found()
    except Exception as e:
        logger.error(
            "api.populate_failed",
            contract_address=contract_address,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return _internal_error(e)

    return PopulateResponse(
        success=True,
        message="Collection population started in background",
        collection_id=ticket.collection.id,
        collection_name=ticket.collection.name,
    )


@router.get("/{contract_address}/populate", response_model=PopulateStatusResponse)
async def get_populate_status(
    contract_address: str,
    engine: CollectionSyncEngine = Depends(get_sync_engine),
):
    """Report whether a populate may run now."""
    try:
        sync_status: SyncStatus = await engine.populate_status(contract_address)
    except InvalidContractAddressError:
        return _invalid_address()
    except Exception as e:
        logger.error(
            "api.populate_status_failed",
            contract_address=contract_address,
            error=str(e),
            error_type=type(e).__name__,
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": "Failed to check populate status"}
        )

    return PopulateStatusResponse(
        can_populate=sync_status.can_run,
        next_populate_time=sync_status.next_time,
        remaining_time=sync_status.remaining_minutes,
        collection=CollectionSummary.from_collection(sync_status.collection),
    )
