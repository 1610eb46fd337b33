"""Service error hierarchy for indexer access, chain reads and collection sync.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, missing tokens)
- SyncError: Request-level outcomes of the collection sync engine
"""

from datetime import datetime


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    - RPC node hiccups
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Token does not exist
    - Contract does not implement the called function
    """

    pass


# Indexer-specific errors
class IndexerError(ServiceError):
    """Base exception for NFT indexer errors."""

    pass


class IndexerRateLimitError(TransientError, IndexerError):
    """Rate limit exceeded (429)."""

    pass


class IndexerUnavailableError(TransientError, IndexerError):
    """Network timeout or indexer unavailable (5xx)."""

    pass


class IndexerAuthError(PermanentError, IndexerError):
    """Authentication failure (401, 403)."""

    pass


class TokenNotFoundError(PermanentError, IndexerError):
    """Token does not exist (404, invalid token id, or indexer-reported miss)."""

    pass


# Chain-specific errors
class ChainReadError(TransientError):
    """On-chain read failed (RPC unreachable or call reverted)."""

    pass


# Sync engine outcomes
class SyncError(ServiceError):
    """Base exception for collection sync request outcomes."""

    pass


class InvalidContractAddressError(SyncError):
    """Contract address is not 0x followed by 40 hex characters."""

    pass


class CollectionNotFoundError(SyncError):
    """Collection is not stored and could not be fetched from any source."""

    pass


class RefreshInProgressError(SyncError):
    """Another refresh or populate holds the collection's lock."""

    pass


class RefreshCooldownError(SyncError):
    """Collection was refreshed too recently."""

    def __init__(self, cooldown_until: datetime, remaining_minutes: int):
        super().__init__(
            f"Collection refresh in cooldown for {remaining_minutes} more minute(s)"
        )
        self.cooldown_until = cooldown_until
        self.remaining_minutes = remaining_minutes


class SyncCancelledError(SyncError):
    """Sync job outlived its lock authority window or was cancelled."""

    pass


class NothingSyncedError(SyncError):
    """Every discovered token failed to fetch or persist."""

    def __init__(self, discovered: int, failed: int):
        super().__init__(f"All {discovered} discovered tokens failed ({failed} failures)")
        self.discovered = discovered
        self.failed = failed
