"""Exception hierarchy shared across the whale tracker core."""


class WhaleTrackerError(Exception):
    """Base exception for whale tracker errors."""


class ConfigurationError(WhaleTrackerError):
    """Raised at startup when the configuration cannot support a run.

    For example a chain without an RPC endpoint. Invalid setting values
    are rejected earlier, by the settings validators. Never retried.
    """


class TransientUpstreamError(WhaleTrackerError):
    """Raised when a chain RPC or price source call fails.

    The indexer treats these as retryable on the next poll tick.
    """


class EventValidationError(WhaleTrackerError):
    """Raised when an event is rejected on insert because required fields are missing."""

    def __init__(self, message: str, *, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.missing = missing
