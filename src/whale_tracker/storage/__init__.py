"""Storage - SQLAlchemy persistence for whale events."""

from whale_tracker.storage.database import DatabaseManager
from whale_tracker.storage.models import Base, WhaleEventModel
from whale_tracker.storage.repos import EventRepository
from whale_tracker.storage.store import EventFilter, EventStore

__all__ = [
    "Base",
    "DatabaseManager",
    "EventFilter",
    "EventRepository",
    "EventStore",
    "WhaleEventModel",
]
