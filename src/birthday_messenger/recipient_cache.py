from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from birthday_messenger.models import RecipientRecord
from birthday_messenger.roster import validate_rows
from birthday_messenger.roster_sources import RosterProvider

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheSnapshot:
    recipients: tuple[RecipientRecord, ...]
    fetched_at: datetime


class RecipientCache:
    """Last successfully validated roster, refreshed when older than the freshness window.

    The recipient list and its fetch time live in one immutable snapshot that is
    swapped in a single assignment, so readers never see a mismatched pair.
    A failed fetch leaves the previous snapshot untouched and propagates.
    """

    def __init__(
        self,
        provider: RosterProvider,
        *,
        default_timezone: str = "UTC",
        freshness: timedelta = timedelta(hours=24),
        clock: Clock = utc_now,
    ) -> None:
        self._provider = provider
        self._default_timezone = default_timezone
        self._freshness = freshness
        self._clock = clock
        self._snapshot: CacheSnapshot | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def fetched_at(self) -> datetime | None:
        snapshot = self._snapshot
        return snapshot.fetched_at if snapshot else None

    def is_fresh(self) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return False
        return self._clock() - snapshot.fetched_at < self._freshness

    async def load(self) -> list[RecipientRecord]:
        snapshot = self._snapshot
        if snapshot is not None and self.is_fresh():
            return list(snapshot.recipients)
        return await self.force_refresh()

    async def force_refresh(self) -> list[RecipientRecord]:
        async with self._refresh_lock:
            rows = await self._provider.fetch()
            validation = validate_rows(rows, self._default_timezone)
            self._snapshot = CacheSnapshot(
                recipients=tuple(validation.recipients),
                fetched_at=self._clock(),
            )

        LOGGER.info(
            "Loaded %s valid recipients (%s rows rejected)",
            len(validation.recipients),
            len(validation.rejected),
        )
        return list(validation.recipients)
