"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

NETWORK_SUBDOMAINS = {
    "BASE_MAINNET": "base-mainnet",
    "BASE_SEPOLIA": "base-sepolia",
    "ETH_MAINNET": "eth-mainnet",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Relational store
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Key-value store (locks, cache entries, cache events)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    app_name: str = Field(default="such-market", alias="APP_NAME")

    # Alchemy indexer + RPC
    alchemy_api_key: str = Field(default="", alias="ALCHEMY_API_KEY")
    network: str = Field(default="BASE_MAINNET", alias="NETWORK")
    indexer_timeout_seconds: float = Field(default=30.0, alias="INDEXER_TIMEOUT_SECONDS")

    # Locks and cooldown
    refresh_lock_ttl_seconds: int = Field(default=300, alias="REFRESH_LOCK_TTL_SECONDS")
    populate_lock_ttl_seconds: int = Field(default=1800, alias="POPULATE_LOCK_TTL_SECONDS")
    refresh_cooldown_seconds: int = Field(default=300, alias="REFRESH_COOLDOWN_SECONDS")

    # Discovery
    refresh_page_size: int = Field(default=20, alias="REFRESH_PAGE_SIZE")
    refresh_max_pages: int | None = Field(default=5, alias="REFRESH_MAX_PAGES")
    populate_page_size: int = Field(default=100, alias="POPULATE_PAGE_SIZE")
    scan_page_delay_seconds: float = Field(default=0.2, alias="SCAN_PAGE_DELAY_SECONDS")
    probe_supply_threshold: int = Field(default=10_000, alias="PROBE_SUPPLY_THRESHOLD")
    probe_delay_seconds: float = Field(default=0.1, alias="PROBE_DELAY_SECONDS")

    # Metadata fetch
    populate_batch_size: int = Field(default=10, alias="POPULATE_BATCH_SIZE")
    fetch_batch_delay_seconds: float = Field(default=1.0, alias="FETCH_BATCH_DELAY_SECONDS")

    # Error ledger
    max_fetch_retry_count: int = Field(default=3, alias="MAX_FETCH_RETRY_COUNT")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def alchemy_nft_api_url(self) -> str:
        """Base URL of the Alchemy NFT API v3 for the configured network."""
        subdomain = NETWORK_SUBDOMAINS[self.network]
        return f"https://{subdomain}.g.alchemy.com/nft/v3/{self.alchemy_api_key}"

    @property
    def alchemy_rpc_url(self) -> str:
        """JSON-RPC endpoint for on-chain reads on the configured network."""
        subdomain = NETWORK_SUBDOMAINS[self.network]
        return f"https://{subdomain}.g.alchemy.com/v2/{self.alchemy_api_key}"

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments.
        """
        if self.network not in NETWORK_SUBDOMAINS:
            raise ValueError(
                f"Unsupported NETWORK {self.network!r}. "
                f"Expected one of: {', '.join(sorted(NETWORK_SUBDOMAINS))}"
            )

        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.alchemy_api_key:
            missing.append(
                "ALCHEMY_API_KEY: Create an app at https://dashboard.alchemy.com "
                "with the NFT API enabled"
            )

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.app_env == "production"
        else structlog.dev.ConsoleRenderer()
    )
    processors = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.app_env == "production":
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
