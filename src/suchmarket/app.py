"""FastAPI application factory."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from web3 import Web3

from suchmarket.api.routes import collections
from suchmarket.core import timezone  # noqa: F401
from suchmarket.core.config import Settings, configure_logging
from suchmarket.core.database import setup_db_session
from suchmarket.core.kv import setup_redis
from suchmarket.services.blockchain.contract_reader import ContractReader
from suchmarket.services.indexer.alchemy_client import AlchemyClient
from suchmarket.services.sync.cache_bus import CacheInvalidationBus
from suchmarket.services.sync.engine import CollectionSyncEngine
from suchmarket.services.sync.locks import LockManager
from suchmarket.services.sync.tasks import SyncTaskRegistry
from suchmarket.uow import create_uow_factory

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, build database, key-value store, indexer
      and chain clients, wire the sync engine
    - Shutdown: Cancel background populate tasks, close clients
    """
    settings: Settings = app.state.settings

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    redis = setup_redis(settings.redis_url)

    indexer = AlchemyClient(settings.alchemy_nft_api_url, timeout=settings.indexer_timeout_seconds)
    w3 = Web3(Web3.HTTPProvider(settings.alchemy_rpc_url))
    task_registry = SyncTaskRegistry()

    sync_engine = CollectionSyncEngine(
        uow_factory=uow_factory,
        indexer=indexer,
        locks=LockManager(redis),
        cache_bus=CacheInvalidationBus(redis, settings.app_name),
        settings=settings,
        contract_reader=ContractReader(w3),
        task_registry=task_registry,
    )

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.redis = redis
    app.state.sync_engine = sync_engine

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        network=settings.network,
    )

    yield

    logger.info("application.shutdown", active_tasks=len(task_registry.active()))
    await task_registry.shutdown()
    await indexer.aclose()
    await redis.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Optional settings (loaded from the environment when omitted)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Such Market Sync API",
        description="NFT collection synchronization and discovery",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Collections router has prefix="/api/collection" in definition
    app.include_router(collections.router)

    # Health check endpoint with database and key-value store validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint.

        Returns:
            200: {"status": "healthy"} if database and key-value store respond
            503: {"status": "unhealthy", "error": {...}} otherwise
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
            await app.state.redis.ping()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
