"""Collection entity - one on-chain NFT contract mirrored locally."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel

from suchmarket.core.timezone import utc_now


class TokenType(str, Enum):
    """Token standard implemented by a collection contract."""

    ERC721 = "ERC721"
    ERC1155 = "ERC1155"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "TokenType":
        """Map an indexer/on-chain token type string onto the enum."""
        if value and value.upper() in ("ERC721", "ERC1155"):
            return cls(value.upper())
        return cls.UNKNOWN


class Collection(SQLModel, table=True):
    """Collection represents one mirrored NFT contract and its refresh schedule."""

    __tablename__ = "collections"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    contract_address: str = Field(max_length=42, unique=True, index=True)
    name: str = Field(default="Unknown Collection", max_length=255)
    token_type: TokenType = Field(default=TokenType.UNKNOWN)
    total_supply: Optional[int] = Field(default=None, ge=0)
    last_refresh_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    refresh_cooldown_until: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    @field_validator("contract_address")
    @classmethod
    def validate_contract_address(cls, v: str) -> str:
        """Contract addresses are always stored lower-cased."""
        return v.lower()
