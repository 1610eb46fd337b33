"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from suchmarket.models.collection import Collection, TokenType
from suchmarket.models.fetch_error import FetchErrorType, NFTFetchError
from suchmarket.models.nft import NFT

__all__ = [
    "Collection",
    "TokenType",
    "NFT",
    "NFTFetchError",
    "FetchErrorType",
]
