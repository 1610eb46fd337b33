"""Parameters that distinguish a light refresh from a comprehensive populate."""

from dataclasses import dataclass

from suchmarket.core.config import Settings
from suchmarket.services.sync.keys import populate_lock_key, refresh_lock_key

REFRESH = "refresh"
POPULATE = "populate"


@dataclass(frozen=True)
class SyncProfile:
    """How one sync run discovers, fetches and gates itself.

    Attributes:
        kind: "refresh" or "populate"
        lock_ttl_seconds: Lock TTL, also the job's authority window
        cooldown_seconds: Cooldown set after success (None = no cooldown)
        page_size: Full-scan page size
        max_pages: Full-scan page cap (None = walk to exhaustion)
        use_probe: Whether the sequential probe may run
        batch_size: Concurrent fetch batch size (None = one batch)
        busy_message: Rejection message while the lock is held
        event_reason: ``reason`` carried by the cache event
    """

    kind: str
    lock_ttl_seconds: int
    cooldown_seconds: int | None
    page_size: int
    max_pages: int | None
    use_probe: bool
    batch_size: int | None
    busy_message: str
    event_reason: str

    @classmethod
    def refresh(cls, settings: Settings) -> "SyncProfile":
        return cls(
            kind=REFRESH,
            lock_ttl_seconds=settings.refresh_lock_ttl_seconds,
            cooldown_seconds=settings.refresh_cooldown_seconds,
            page_size=settings.refresh_page_size,
            max_pages=settings.refresh_max_pages,
            use_probe=False,
            batch_size=None,
            busy_message="Refresh already in progress",
            event_reason="manual_refresh",
        )

    @classmethod
    def populate(cls, settings: Settings) -> "SyncProfile":
        return cls(
            kind=POPULATE,
            lock_ttl_seconds=settings.populate_lock_ttl_seconds,
            cooldown_seconds=None,
            page_size=settings.populate_page_size,
            max_pages=None,
            use_probe=True,
            batch_size=settings.populate_batch_size,
            busy_message="Population already in progress",
            event_reason="populate",
        )

    def lock_key(self, app_name: str, contract_address: str) -> str:
        if self.kind == REFRESH:
            return refresh_lock_key(app_name, contract_address)
        return populate_lock_key(app_name, contract_address)

    def sibling_lock_key(self, app_name: str, contract_address: str) -> str:
        """Lock of the other sync kind; both kinds exclude each other."""
        if self.kind == REFRESH:
            return populate_lock_key(app_name, contract_address)
        return refresh_lock_key(app_name, contract_address)
