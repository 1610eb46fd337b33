"""NFT entity - one token within a mirrored collection."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from suchmarket.core.timezone import utc_now


class NFT(SQLModel, table=True):
    """NFT holds the normalized metadata of a single token.

    The (collection_id, token_id) pair is the upsert key; rows are never
    deleted by the sync engine.
    """

    __tablename__ = "nfts"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("collection_id", "token_id", name="uq_nfts_collection_token"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    collection_id: UUID = Field(foreign_key="collections.id", index=True)
    token_id: str = Field(max_length=78)
    title: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    image_url: Optional[str] = Field(default=None)
    thumbnail_url: Optional[str] = Field(default=None)
    # "metadata" is reserved on SQLModel classes, so the attribute is renamed
    raw_metadata: Optional[dict] = Field(default=None, sa_column=Column("metadata", JSON))
    attributes: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    media: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    owner_address: Optional[str] = Field(default=None, max_length=42)
    last_owner_check_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
