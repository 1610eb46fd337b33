"""Collection repository.

Provides data access methods for Collection entities keyed by contract address.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from suchmarket.core.timezone import utc_now
from suchmarket.models import Collection, TokenType


class CollectionRepository:
    """Repository for Collection entities.

    Methods:
    - get_by_id: Retrieve collection by UUID
    - get_by_address: Lookup by lower-cased contract address
    - upsert: Insert or update collection-level metadata on contract_address
    - mark_refreshed: Stamp last_refresh_at
    - set_cooldown: Set refresh_cooldown_until
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, collection_id: UUID) -> Collection | None:
        result = await self.session.execute(
            select(Collection).where(Collection.id == collection_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_address(self, contract_address: str) -> Collection | None:
        """Retrieve collection by contract address (stored lower-cased).

        Args:
            contract_address: Contract address in any case

        Returns:
            Collection if found, None otherwise
        """
        result = await self.session.execute(
            select(Collection)
            .where(Collection.contract_address == contract_address.lower())  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        contract_address: str,
        name: str | None = None,
        token_type: TokenType = TokenType.UNKNOWN,
        total_supply: int | None = None,
    ) -> Collection:
        """Create or update a collection on its contract address.

        A conflicting write replaces name, token type and total supply; the id,
        refresh timestamps and cooldown of an existing row are kept.

        Args:
            contract_address: Contract address (lower-cased before writing)
            name: Collection name ("Unknown Collection" when not known)
            token_type: ERC721, ERC1155 or unknown
            total_supply: Total supply if known

        Returns:
            The stored collection
        """
        now = utc_now()
        address = contract_address.lower()
        stmt = insert(Collection.__table__).values(
            id=uuid4(),
            contract_address=address,
            name=name or "Unknown Collection",
            token_type=token_type,
            total_supply=total_supply,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["contract_address"],
            set_={
                "name": stmt.excluded["name"],
                "token_type": stmt.excluded["token_type"],
                "total_supply": stmt.excluded["total_supply"],
                "updated_at": stmt.excluded["updated_at"],
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

        collection = await self.get_by_address(address)
        if collection is None:
            raise RuntimeError(f"Collection {address} missing after upsert")
        return collection

    async def mark_refreshed(self, collection_id: UUID, at: datetime | None = None) -> None:
        """Stamp the collection's last_refresh_at (defaults to now)."""
        now = at or utc_now()
        await self.session.execute(
            update(Collection)
            .where(Collection.id == collection_id)  # type: ignore[arg-type]
            .values(last_refresh_at=now, updated_at=now)
        )
        await self.session.flush()

    async def set_cooldown(self, collection_id: UUID, until: datetime) -> None:
        """Set refresh_cooldown_until for the collection."""
        await self.session.execute(
            update(Collection)
            .where(Collection.id == collection_id)  # type: ignore[arg-type]
            .values(refresh_cooldown_until=until, updated_at=utc_now())
        )
        await self.session.flush()
