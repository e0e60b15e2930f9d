"""SQLAlchemy models for persistent storage.

This module defines the database schema for whale events. Each row holds
one tracked wallet's side of a transfer, with the transfer itself embedded
as JSON so a single transfer can back two rows.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class WhaleEventModel(Base):
    """SQLAlchemy model for normalized whale events."""

    __tablename__ = "whale_events"

    # "{chain}:{tx hash}:{lowercase wallet}"
    id: Mapped[str] = mapped_column(String(200), primary_key=True)

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    wallet: Mapped[str] = mapped_column(String(100), nullable=False)
    wallet_label: Mapped[str | None] = mapped_column(String(200), nullable=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)

    transfer_json: Mapped[str] = mapped_column(Text, nullable=False)

    significance: Mapped[str] = mapped_column(String(10), nullable=False)
    significance_rank: Mapped[int] = mapped_column(Integer, nullable=False)

    # Epoch milliseconds at normalization time.
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_whale_events_wallet", "wallet"),
        Index("idx_whale_events_chain", "chain"),
        Index("idx_whale_events_created_at", "created_at"),
        Index("idx_whale_events_significance_rank", "significance_rank"),
    )
