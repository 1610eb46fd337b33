"""create_collection_sync_tables

Revision ID: 3f2a9c1d7e4b
Revises:
Create Date: 2025-11-03 14:22:41.108532

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c1d7e4b"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create collections, nfts and nft_fetch_errors tables."""
    op.create_table(
        "collections",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contract_address", sa.String(length=42), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "token_type",
            sa.Enum("ERC721", "ERC1155", "UNKNOWN", name="tokentype"),
            nullable=False,
        ),
        sa.Column("total_supply", sa.Integer(), nullable=True),
        sa.Column("last_refresh_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_cooldown_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_collections_contract_address"), "collections", ["contract_address"], unique=True
    )

    op.create_table(
        "nfts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("collection_id", sa.Uuid(), nullable=False),
        sa.Column("token_id", sa.String(length=78), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("thumbnail_url", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("attributes", sa.JSON(), nullable=False),
        sa.Column("media", sa.JSON(), nullable=False),
        sa.Column("owner_address", sa.String(length=42), nullable=True),
        sa.Column("last_owner_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["collection_id"], ["collections.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("collection_id", "token_id", name="uq_nfts_collection_token"),
    )
    op.create_index(op.f("ix_nfts_collection_id"), "nfts", ["collection_id"], unique=False)

    op.create_table(
        "nft_fetch_errors",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("collection_id", sa.Uuid(), nullable=False),
        sa.Column("token_id", sa.String(length=78), nullable=False),
        sa.Column("error_type", sa.String(length=32), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["collection_id"], ["collections.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "collection_id", "token_id", "error_type", name="uq_nft_fetch_errors_key"
        ),
    )
    op.create_index(
        op.f("ix_nft_fetch_errors_collection_id"),
        "nft_fetch_errors",
        ["collection_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_nft_fetch_errors_error_type"), "nft_fetch_errors", ["error_type"], unique=False
    )
    op.create_index(
        op.f("ix_nft_fetch_errors_retry_count"), "nft_fetch_errors", ["retry_count"], unique=False
    )


def downgrade() -> None:
    """Drop collection sync tables."""
    op.drop_index(op.f("ix_nft_fetch_errors_retry_count"), table_name="nft_fetch_errors")
    op.drop_index(op.f("ix_nft_fetch_errors_error_type"), table_name="nft_fetch_errors")
    op.drop_index(op.f("ix_nft_fetch_errors_collection_id"), table_name="nft_fetch_errors")
    op.drop_table("nft_fetch_errors")
    op.drop_index(op.f("ix_nfts_collection_id"), table_name="nfts")
    op.drop_table("nfts")
    op.drop_index(op.f("ix_collections_contract_address"), table_name="collections")
    op.drop_table("collections")
    sa.Enum(name="tokentype").drop(op.get_bind(), checkfirst=True)
