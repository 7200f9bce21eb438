from __future__ import annotations
from collections import OrderedDict
from typing import Protocol, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from paygate.persistence.repo import EventRepo

# providers retry for a few days at most; this comfortably covers that window on one instance
DEFAULT_MAX_ENTRIES = 50_000


class ProcessedEventStore(Protocol):
    async def record_if_new(self, *, provider: str, event_id: str, event_type: str) -> bool: ...
    async def release(self, *, provider: str, event_id: str) -> None: ...


class DatabaseEventStore(EventRepo):
    """Dedup markers in `processed_webhook_events`, sharing the webhook's transaction."""

    def __init__(self, db: AsyncSession):
        super().__init__(db)

    async def release(self, *, provider: str, event_id: str) -> None:
        # the marker was written in the transaction the caller rolls back
        return None


class InMemoryEventStore:
    """
    Process-local dedup for single-instance and local runs. Markers do not
    survive a restart and are not shared between workers; only the most
    recent `max_entries` deliveries are remembered.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max_entries
        self._seen: "OrderedDict[Tuple[str, str], None]" = OrderedDict()

    async def record_if_new(self, *, provider: str, event_id: str, event_type: str) -> bool:
        # no await between check and add, so this is atomic on the event loop
        key = (provider, event_id)
        if key in self._seen:
            return False
        self._seen[key] = None
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return True

    async def release(self, *, provider: str, event_id: str) -> None:
        self._seen.pop((provider, event_id), None)
