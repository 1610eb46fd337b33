"""Per-collection refresh cooldown."""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from suchmarket.core.timezone import as_utc, utc_now
from suchmarket.models import Collection


@dataclass(frozen=True)
class CooldownStatus:
    """Result of a cooldown check."""

    in_cooldown: bool
    remaining: timedelta
    until: datetime | None

    @property
    def remaining_minutes(self) -> int:
        """Remaining wait rounded up to whole minutes (0 when not in cooldown)."""
        if not self.in_cooldown:
            return 0
        return math.ceil(self.remaining.total_seconds() / 60)


class CooldownScheduler:
    """Reads and writes a collection's ``refresh_cooldown_until`` timestamp.

    A collection that never had a cooldown set (freshly registered) is never
    in cooldown.
    """

    def is_in_cooldown(self, collection: Collection, now: datetime | None = None) -> CooldownStatus:
        until = as_utc(collection.refresh_cooldown_until)
        if until is None:
            return CooldownStatus(in_cooldown=False, remaining=timedelta(0), until=None)

        now = now or utc_now()
        if until <= now:
            return CooldownStatus(in_cooldown=False, remaining=timedelta(0), until=until)
        return CooldownStatus(in_cooldown=True, remaining=until - now, until=until)

    async def set_cooldown(self, uow, collection_id: UUID, duration_seconds: int) -> datetime:
        """Set the collection's cooldown to now + duration and return the new deadline."""
        until = utc_now() + timedelta(seconds=duration_seconds)
        await uow.collections.set_cooldown(collection_id, until)
        return until
