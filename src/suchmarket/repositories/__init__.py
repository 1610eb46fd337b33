"""Repository layer for the collection sync engine.

Provides data access abstractions for collections, NFTs and the error ledger.
No base classes - each repository is self-contained.
"""

from suchmarket.repositories.collection import CollectionRepository
from suchmarket.repositories.fetch_error import FetchErrorRepository
from suchmarket.repositories.nft import NFTRepository, UpsertResult

__all__ = [
    "CollectionRepository",
    "NFTRepository",
    "FetchErrorRepository",
    "UpsertResult",
]
