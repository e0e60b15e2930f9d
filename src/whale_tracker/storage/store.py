"""Event store: idempotent persistence and paginated queries.

The indexer is the single writer; the serving layer reads through
:meth:`EventStore.query`, :meth:`EventStore.get_by_wallet` and
:meth:`EventStore.stats`. Each call runs in its own session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from whale_tracker.errors import EventValidationError
from whale_tracker.models import Chain, EventPage, EventStats, Significance, WhaleEvent
from whale_tracker.storage.database import DatabaseManager
from whale_tracker.storage.repos import EventRepository

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 50
DEFAULT_STATS_SAMPLE_SIZE = 100


@dataclass(frozen=True)
class EventFilter:
    """Query filter for :meth:`EventStore.query`.

    Attributes:
        chain: Exact chain match.
        min_significance: Inclusive lower bound on significance.
        limit: Page size, used as given.
        cursor: Exclusive upper bound on ``created_at`` from a previous page.
    """

    chain: Chain | None = None
    min_significance: Significance | None = None
    limit: int = DEFAULT_QUERY_LIMIT
    cursor: str | None = None

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be >= 1")

    def cursor_value(self) -> int | None:
        """Parse the cursor into an epoch-ms bound.

        Raises:
            ValueError: If the cursor is not an integer string.
        """
        if self.cursor is None or self.cursor == "":
            return None
        try:
            return int(self.cursor)
        except ValueError as e:
            raise ValueError(f"Invalid cursor: {self.cursor!r}") from e


def validate_event(event: WhaleEvent) -> None:
    """Check an event carries every required field.

    Raises:
        EventValidationError: Listing the missing fields.
    """
    missing: list[str] = []
    if not event.id:
        missing.append("id")
    if event.type is None:
        missing.append("type")
    if not event.wallet:
        missing.append("wallet")
    if event.chain is None:
        missing.append("chain")
    if event.transfer is None:
        missing.append("transfer")
    elif not event.transfer.hash:
        missing.append("transfer.hash")
    if event.significance is None:
        missing.append("significance")
    if event.created_at is None:
        missing.append("created_at")
    if missing:
        raise EventValidationError(
            f"Event {event.id or '<no id>'} is missing required fields: {', '.join(missing)}",
            missing=tuple(missing),
        )


class EventStore:
    """Durable store of whale events.

    Example:
        ```python
        store = EventStore.from_url("sqlite+aiosqlite:///./data/whale-events.db")
        await store.init_schema()
        await store.insert(event)
        page = await store.query(EventFilter(min_significance=Significance.MEDIUM, limit=20))
        older = await store.query(EventFilter(limit=20, cursor=page.next_cursor))
        await store.close()
        ```
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    @classmethod
    def from_url(cls, database_url: str, *, echo: bool = False) -> EventStore:
        return cls(DatabaseManager(database_url, echo=echo))

    @property
    def db(self) -> DatabaseManager:
        return self._db

    async def init_schema(self) -> None:
        """Create the events table and indexes if they do not exist."""
        await self._db.init_schema_async()

    async def insert(self, event: WhaleEvent) -> None:
        """Upsert an event keyed by its id.

        Raises:
            EventValidationError: If required fields are absent.
        """
        validate_event(event)
        async with self._db.get_async_session() as session:
            await EventRepository(session).upsert(event)
        logger.debug("Stored event %s", event.id)

    async def get(self, event_id: str) -> WhaleEvent | None:
        async with self._db.get_async_session() as session:
            return await EventRepository(session).get_by_id(event_id)

    async def query(
        self,
        event_filter: EventFilter | None = None,
        *,
        chain: Chain | None = None,
        min_significance: Significance | None = None,
        limit: int = DEFAULT_QUERY_LIMIT,
        cursor: str | None = None,
    ) -> EventPage:
        """Query events newest first with cursor pagination.

        Either pass an :class:`EventFilter` or the same fields as keywords.
        ``limit`` is not capped here; a serving layer enforces its own maximum.

        Returns:
            The page of events and, if more rows exist, the cursor for the
            next page (the ``created_at`` of this page's last event).
        """
        if event_filter is None:
            event_filter = EventFilter(
                chain=chain,
                min_significance=min_significance,
                limit=limit,
                cursor=cursor,
            )

        page_size = event_filter.limit
        async with self._db.get_async_session() as session:
            rows = await EventRepository(session).list_recent(
                chain=event_filter.chain,
                min_rank=event_filter.min_significance.rank if event_filter.min_significance else None,
                before_created_at=event_filter.cursor_value(),
                limit=page_size + 1,
            )

        if len(rows) > page_size:
            events = rows[:page_size]
            return EventPage(events=events, next_cursor=str(events[-1].created_at))
        return EventPage(events=rows, next_cursor=None)

    async def get_by_wallet(self, wallet: str, limit: int = DEFAULT_QUERY_LIMIT) -> list[WhaleEvent]:
        """Events for one wallet, newest first. Unknown wallets yield ``[]``."""
        if limit < 1:
            raise ValueError("limit must be >= 1")
        async with self._db.get_async_session() as session:
            return await EventRepository(session).list_by_wallet(wallet, limit=limit)

    async def stats(self, sample_size: int = DEFAULT_STATS_SAMPLE_SIZE) -> EventStats:
        """Tally the most recent ``sample_size`` events by significance."""
        if sample_size < 1:
            raise ValueError("sample_size must be >= 1")
        async with self._db.get_async_session() as session:
            labels = await EventRepository(session).recent_significance(limit=sample_size)

        return EventStats(
            sample_size=sample_size,
            high=labels.count(Significance.HIGH.value),
            medium=labels.count(Significance.MEDIUM.value),
            low=labels.count(Significance.LOW.value),
        )

    async def close(self) -> None:
        await self._db.dispose_async()
