"""NFTFetchError entity - outstanding per-token metadata fetch failure."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from suchmarket.core.timezone import utc_now


class FetchErrorType(str, Enum):
    """Classification of a failed token sync."""

    METADATA_FETCH = "metadata_fetch"
    INVALID_TOKEN = "invalid_token"
    PERSISTENCE = "persistence"
    UNEXPECTED = "unexpected"


class NFTFetchError(SQLModel, table=True):
    """One row per (collection, token, error type) that is still broken.

    A repeated failure increments retry_count and replaces the message.
    A later success deletes the row, so presence means "still broken".
    """

    __tablename__ = "nft_fetch_errors"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint(
            "collection_id", "token_id", "error_type", name="uq_nft_fetch_errors_key"
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    collection_id: UUID = Field(foreign_key="collections.id", index=True)
    token_id: str = Field(max_length=78)
    error_type: str = Field(max_length=32, index=True)
    error_message: Optional[str] = Field(default=None)
    retry_count: int = Field(default=0, ge=0, index=True)
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
