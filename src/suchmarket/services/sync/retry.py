"""Retry flow for outstanding error ledger rows."""

from dataclasses import dataclass, field

import structlog
from sqlalchemy.exc import SQLAlchemyError

from suchmarket.models import FetchErrorType
from suchmarket.services.sync.fetcher import FetchFailure, MetadataFetcher

logger = structlog.get_logger()


@dataclass
class RetryResult:
    """Result of a retry run."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class RetryService:
    """Re-fetches tokens listed in the error ledger.

    A token that now fetches and stores cleanly has all its ledger rows
    deleted; a token that fails again has its row's retry_count incremented,
    which eventually moves it past the retry ceiling.
    """

    def __init__(self, uow_factory, indexer, max_retry_count: int = 3):
        self.uow_factory = uow_factory
        self.fetcher = MetadataFetcher(indexer)
        self.max_retry_count = max_retry_count

    async def retry_failed(self, limit: int = 50) -> RetryResult:
        """Retry up to ``limit`` ledger rows below the retry ceiling.

        Args:
            limit: Maximum ledger rows to retry

        Returns:
            RetryResult with attempted/succeeded/failed counts
        """
        async with await self.uow_factory() as uow:
            rows = await uow.fetch_errors.list_retryable(
                limit=limit, max_retry_count=self.max_retry_count
            )
            work = []
            for row in rows:
                collection = await uow.collections.get_by_id(row.collection_id)
                if collection is None:
                    continue
                work.append((row, collection.contract_address))

        result = RetryResult()
        if not work:
            logger.info("retry.nothing_to_retry")
            return result

        for row, contract_address in work:
            result.attempted += 1
            outcome = await self.fetcher.fetch_one(contract_address, row.token_id)
            try:
                async with await self.uow_factory() as uow:
                    if isinstance(outcome, FetchFailure):
                        await uow.fetch_errors.record_failure(
                            row.collection_id, row.token_id, row.error_type, outcome.message
                        )
                        ok = False
                    else:
                        upsert = await uow.nfts.upsert_many(row.collection_id, [outcome])
                        if upsert.written:
                            await uow.fetch_errors.clear_for_tokens(
                                row.collection_id, [row.token_id]
                            )
                            ok = True
                        else:
                            await uow.fetch_errors.record_failure(
                                row.collection_id,
                                row.token_id,
                                FetchErrorType.PERSISTENCE,
                                "Failed to upsert NFT row",
                            )
                            ok = False
            except SQLAlchemyError as e:
                logger.error(
                    "retry.persist_failed",
                    token_id=row.token_id,
                    contract_address=contract_address,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                ok = False

            if ok:
                result.succeeded += 1
                logger.info(
                    "retry.token_recovered",
                    contract_address=contract_address,
                    token_id=row.token_id,
                )
            else:
                result.failed += 1
                message = outcome.message if isinstance(outcome, FetchFailure) else "persist failed"
                result.errors.append(f"{contract_address}#{row.token_id}: {message}")

        logger.info(
            "retry.completed",
            attempted=result.attempted,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result
