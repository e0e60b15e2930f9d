"""Significance classification and whale event construction."""

from __future__ import annotations

import time

from whale_tracker.models import (
    DEFAULT_THRESHOLDS,
    EventType,
    Significance,
    Thresholds,
    Transfer,
    WhaleEvent,
)


def classify_significance(
    value_usd: float,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> Significance:
    """Classify a USD value against the configured thresholds.

    Values below ``thresholds.low`` still classify as LOW; callers use
    :func:`is_significant` to decide whether an event is built at all.
    """
    if value_usd >= thresholds.high:
        return Significance.HIGH
    if value_usd >= thresholds.medium:
        return Significance.MEDIUM
    return Significance.LOW


def is_significant(value_usd: float, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> bool:
    """Return True if ``value_usd`` clears the minimum admission bar."""
    return value_usd >= thresholds.low


def generate_event_id(transfer: Transfer, wallet: str) -> str:
    return f"{transfer.chain.value}:{transfer.hash}:{wallet.lower()}"


def create_event(
    transfer: Transfer,
    wallet: str,
    wallet_label: str | None = None,
    *,
    event_type: EventType | None = None,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
    now_ms: int | None = None,
) -> WhaleEvent:
    """Build a WhaleEvent for one tracked side of a transfer.

    Unless ``event_type`` is given, the event is ``transfer_in`` when the
    wallet is the recipient and ``transfer_out`` otherwise. ``created_at``
    is processing time, not chain time.

    Args:
        transfer: The qualifying transfer.
        wallet: Tracked wallet address (any case).
        wallet_label: Optional label carried onto the event.
        event_type: Explicit direction, used by the indexer which knows the side.
        thresholds: Significance thresholds.
        now_ms: Override for the processing timestamp (epoch ms).

    Returns:
        The normalized WhaleEvent.
    """
    wallet_lower = wallet.lower()
    if event_type is None:
        is_incoming = transfer.to_address.lower() == wallet_lower
        event_type = EventType.TRANSFER_IN if is_incoming else EventType.TRANSFER_OUT
    created_at = now_ms if now_ms is not None else int(time.time() * 1000)

    return WhaleEvent(
        id=generate_event_id(transfer, wallet_lower),
        type=event_type,
        wallet=wallet_lower,
        wallet_label=wallet_label,
        chain=transfer.chain,
        transfer=transfer,
        significance=classify_significance(transfer.value_usd, thresholds),
        created_at=created_at,
    )
