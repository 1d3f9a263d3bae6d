"""Domain-specific errors for mediasync core modules."""

from __future__ import annotations


class MissingCredentialsError(RuntimeError):
    """Raised when an owner has no connected external media account."""

    def __init__(self, owner_id: int) -> None:
        super().__init__(f"No connected Plex account for owner {owner_id}")
        self.owner_id = owner_id


class JobCancelledError(RuntimeError):
    """Raised inside a processor once its cancellation token was tripped."""

    def __init__(self, message: str = "Job cancelled by user") -> None:
        super().__init__(message)


__all__ = ["JobCancelledError", "MissingCredentialsError"]
