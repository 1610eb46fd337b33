"""FastAPI dependencies for request handling."""

from fastapi import Request

from suchmarket.services.sync.engine import CollectionSyncEngine


def get_sync_engine(request: Request) -> CollectionSyncEngine:
    """Get the collection sync engine from app state.

    The engine owns the lock manager, cache bus, indexer client and the
    background task registry, so every request shares one instance.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        CollectionSyncEngine created in the app lifespan
    """
    return request.app.state.sync_engine
