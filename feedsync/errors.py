# feedsync/errors.py


class FeedSyncError(Exception):
    pass


class ValidationError(FeedSyncError):
    """Malformed payload or identity data. Jobs failing with this are not retried."""


class TransientError(FeedSyncError):
    """Network, 5xx or rate-limit failure worth retrying."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class NotFoundError(FeedSyncError):
    pass


class StageTransitionError(FeedSyncError):
    pass
