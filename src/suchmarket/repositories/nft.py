"""NFT repository.

Upserts NFT rows on the (collection_id, token_id) natural key.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from uuid import UUID, uuid4

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from suchmarket.core.timezone import utc_now
from suchmarket.models import NFT

logger = structlog.get_logger()

# Columns overwritten when a token is re-discovered; identity keys are never touched
MUTABLE_COLUMNS = (
    "title",
    "description",
    "image_url",
    "thumbnail_url",
    "metadata",
    "attributes",
    "media",
    "updated_at",
)


@dataclass
class UpsertResult:
    """Outcome of a batch upsert."""

    written: int = 0
    written_token_ids: list[str] = field(default_factory=list)
    failed_token_ids: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_token_ids)


class NFTRepository:
    """Repository for NFT entities.

    Methods:
    - get_by_token: Retrieve one NFT by (collection_id, token_id)
    - upsert_many: Idempotent batch write keyed by (collection_id, token_id)
    - count_for_collection: Number of stored NFTs in a collection
    - list_token_ids: Stored token IDs of a collection
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_token(self, collection_id: UUID, token_id: str) -> NFT | None:
        result = await self.session.execute(
            select(NFT)
            .where(NFT.collection_id == collection_id, NFT.token_id == token_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_many(self, collection_id: UUID, records: Sequence) -> UpsertResult:
        """Insert or update NFT rows for a collection.

        The whole batch is written with one multi-row statement. If that
        statement fails, each row is retried on its own inside a savepoint so
        the caller gets exact written/failed counts instead of an all-or-nothing
        outcome.

        Args:
            collection_id: Owning collection
            records: ``NFTRecord`` objects (order is irrelevant)

        Returns:
            UpsertResult with written count and the token IDs that failed
        """
        if not records:
            return UpsertResult()

        # Duplicate token IDs in one multi-row upsert are rejected by PostgreSQL
        unique_records = {record.token_id: record for record in records}
        rows = [self._row(collection_id, record) for record in unique_records.values()]

        try:
            async with self.session.begin_nested():
                await self.session.execute(self._upsert(rows))
            return UpsertResult(written=len(rows), written_token_ids=list(unique_records))
        except SQLAlchemyError as e:
            logger.warning(
                "nft.bulk_upsert_failed",
                collection_id=str(collection_id),
                rows=len(rows),
                error=str(e),
                error_type=type(e).__name__,
            )

        result = UpsertResult()
        for row in rows:
            try:
                async with self.session.begin_nested():
                    await self.session.execute(self._upsert([row]))
                result.written += 1
                result.written_token_ids.append(row["token_id"])
            except SQLAlchemyError as e:
                logger.error(
                    "nft.upsert_failed",
                    collection_id=str(collection_id),
                    token_id=row["token_id"],
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.failed_token_ids.append(row["token_id"])
        return result

    async def count_for_collection(self, collection_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(NFT).where(NFT.collection_id == collection_id)  # type: ignore[arg-type]
        )
        return result.scalar_one()

    async def list_token_ids(self, collection_id: UUID) -> list[str]:
        result = await self.session.execute(
            select(NFT.token_id).where(NFT.collection_id == collection_id)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())

    def _upsert(self, rows: list[dict]):
        stmt = insert(NFT.__table__).values(rows)
        return stmt.on_conflict_do_update(
            index_elements=["collection_id", "token_id"],
            set_={column: stmt.excluded[column] for column in MUTABLE_COLUMNS},
        )

    @staticmethod
    def _row(collection_id: UUID, record) -> dict:
        now = utc_now()
        return {
            "id": uuid4(),
            "collection_id": collection_id,
            "token_id": str(record.token_id),
            "title": record.title,
            "description": record.description,
            "image_url": record.image_url,
            "thumbnail_url": record.thumbnail_url,
            "metadata": record.metadata,
            "attributes": list(record.attributes or []),
            "media": list(record.media or []),
            "created_at": now,
            "updated_at": now,
        }
