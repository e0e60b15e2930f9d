"""Repository pattern implementation for whale event access."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from whale_tracker.models import Chain, EventType, Significance, Transfer, WhaleEvent
from whale_tracker.storage.models import WhaleEventModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_UPDATABLE_COLUMNS = (
    "type",
    "wallet",
    "wallet_label",
    "chain",
    "transfer_json",
    "significance",
    "significance_rank",
    "created_at",
)


def event_to_row(event: WhaleEvent) -> dict[str, Any]:
    """Flatten a WhaleEvent into column values."""
    return {
        "id": event.id,
        "type": event.type.value,
        "wallet": event.wallet.lower(),
        "wallet_label": event.wallet_label,
        "chain": event.chain.value,
        "transfer_json": json.dumps(event.transfer.to_dict(), separators=(",", ":")),
        "significance": event.significance.value,
        "significance_rank": event.significance.rank,
        "created_at": event.created_at,
    }


def event_from_model(model: WhaleEventModel) -> WhaleEvent:
    """Rebuild a WhaleEvent from its row."""
    return WhaleEvent(
        id=model.id,
        type=EventType(model.type),
        wallet=model.wallet,
        wallet_label=model.wallet_label,
        chain=Chain(model.chain),
        transfer=Transfer.from_dict(json.loads(model.transfer_json)),
        significance=Significance(model.significance),
        created_at=model.created_at,
    )


class EventRepository:
    """Repository for persisted whale events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    async def upsert(self, event: WhaleEvent) -> WhaleEvent:
        """Insert or replace an event by id (idempotent ingestion)."""
        values = event_to_row(event)
        if self._dialect_name() == "postgresql":
            pg_stmt = pg_insert(WhaleEventModel).values(**values)
            pg_stmt = pg_stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={col: pg_stmt.excluded[col] for col in _UPDATABLE_COLUMNS},
            )
            await self.session.execute(pg_stmt)
        else:
            sqlite_stmt = sqlite_insert(WhaleEventModel).values(**values)
            sqlite_stmt = sqlite_stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={col: sqlite_stmt.excluded[col] for col in _UPDATABLE_COLUMNS},
            )
            await self.session.execute(sqlite_stmt)
        await self.session.flush()
        return event

    async def get_by_id(self, event_id: str) -> WhaleEvent | None:
        result = await self.session.execute(select(WhaleEventModel).where(WhaleEventModel.id == event_id))
        model = result.scalar_one_or_none()
        return event_from_model(model) if model else None

    async def list_recent(
        self,
        *,
        chain: Chain | None = None,
        min_rank: int | None = None,
        before_created_at: int | None = None,
        limit: int = 50,
    ) -> list[WhaleEvent]:
        """List events newest first.

        Args:
            chain: Only events on this chain.
            min_rank: Only events whose significance rank is at least this.
            before_created_at: Only events strictly older than this (epoch ms).
            limit: Maximum rows to return.
        """
        stmt = select(WhaleEventModel)
        if chain is not None:
            stmt = stmt.where(WhaleEventModel.chain == chain.value)
        if min_rank is not None:
            stmt = stmt.where(WhaleEventModel.significance_rank >= min_rank)
        if before_created_at is not None:
            stmt = stmt.where(WhaleEventModel.created_at < before_created_at)
        stmt = stmt.order_by(WhaleEventModel.created_at.desc()).limit(limit)

        result = await self.session.execute(stmt)
        return [event_from_model(m) for m in result.scalars().all()]

    async def list_by_wallet(self, wallet: str, *, limit: int = 50) -> list[WhaleEvent]:
        result = await self.session.execute(
            select(WhaleEventModel)
            .where(WhaleEventModel.wallet == wallet.lower())
            .order_by(WhaleEventModel.created_at.desc())
            .limit(limit)
        )
        return [event_from_model(m) for m in result.scalars().all()]

    async def recent_significance(self, *, limit: int) -> list[str]:
        """Significance labels of the ``limit`` most recent events."""
        result = await self.session.execute(
            select(WhaleEventModel.significance).order_by(WhaleEventModel.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
