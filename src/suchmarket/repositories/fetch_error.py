"""NFTFetchError repository (error ledger).

The ledger only ever holds outstanding problems: a failure upserts a row on
(collection_id, token_id, error_type) and a success deletes it.
"""

from collections.abc import Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from suchmarket.core.timezone import utc_now
from suchmarket.models import FetchErrorType, NFTFetchError


def _error_type_value(error_type: FetchErrorType | str) -> str:
    return error_type.value if isinstance(error_type, FetchErrorType) else error_type


class FetchErrorRepository:
    """Repository for NFTFetchError entities.

    Methods:
    - record_failure: Insert with retry_count=1 or increment on the natural key
    - clear_failure: Delete a ledger row by id
    - clear_for_tokens: Delete all ledger rows for tokens that synced successfully
    - list_retryable: Rows whose retry_count is below the ceiling
    - get: Lookup by natural key
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def record_failure(
        self,
        collection_id: UUID,
        token_id: str,
        error_type: FetchErrorType | str,
        message: str,
    ) -> None:
        """Record a fetch failure (UPSERT).

        Query explanation:
        - INSERT: New failure starts at retry_count = 1
        - ON CONFLICT (collection_id, token_id, error_type): Failure seen before
        - DO UPDATE: retry_count + 1, message replaced, updated_at bumped

        Args:
            collection_id: Owning collection
            token_id: Token that failed
            error_type: Ledger classification (metadata_fetch, invalid_token, ...)
            message: Error message (replaces any previous message)
        """
        now = utc_now()
        error_type_value = _error_type_value(error_type)
        table = NFTFetchError.__table__  # type: ignore[attr-defined]
        stmt = insert(table).values(
            id=uuid4(),
            collection_id=collection_id,
            token_id=str(token_id),
            error_type=error_type_value,
            error_message=message,
            retry_count=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["collection_id", "token_id", "error_type"],
            set_={
                "retry_count": table.c.retry_count + 1,
                "error_message": stmt.excluded["error_message"],
                "updated_at": stmt.excluded["updated_at"],
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def clear_failure(self, error_id: UUID) -> bool:
        """Delete a ledger row (idempotent).

        Returns:
            True if a row was deleted, False if it did not exist
        """
        result = await self.session.execute(
            delete(NFTFetchError).where(NFTFetchError.id == error_id)  # type: ignore[arg-type]
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def clear_for_tokens(self, collection_id: UUID, token_ids: Sequence[str]) -> int:
        """Delete every ledger row for the given tokens of a collection.

        Returns:
            Number of rows deleted
        """
        if not token_ids:
            return 0
        result = await self.session.execute(
            delete(NFTFetchError).where(
                NFTFetchError.collection_id == collection_id,  # type: ignore[arg-type]
                NFTFetchError.token_id.in_([str(t) for t in token_ids]),  # type: ignore[attr-defined]
            )
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def list_retryable(
        self, limit: int = 50, max_retry_count: int = 3
    ) -> list[NFTFetchError]:
        """List ledger rows that have not reached the retry ceiling.

        Args:
            limit: Maximum rows to return
            max_retry_count: Rows with retry_count >= this value are excluded

        Returns:
            Rows ordered by most recent failure first
        """
        result = await self.session.execute(
            select(NFTFetchError)
            .where(NFTFetchError.retry_count < max_retry_count)  # type: ignore[arg-type]
            .order_by(NFTFetchError.updated_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get(
        self, collection_id: UUID, token_id: str, error_type: FetchErrorType | str
    ) -> NFTFetchError | None:
        error_type_value = _error_type_value(error_type)
        result = await self.session.execute(
            select(NFTFetchError)
            .where(
                NFTFetchError.collection_id == collection_id,  # type: ignore[arg-type]
                NFTFetchError.token_id == str(token_id),  # type: ignore[arg-type]
                NFTFetchError.error_type == error_type_value,  # type: ignore[arg-type]
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_collection(self, collection_id: UUID) -> list[NFTFetchError]:
        result = await self.session.execute(
            select(NFTFetchError).where(NFTFetchError.collection_id == collection_id)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())
