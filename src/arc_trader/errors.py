"""Errors raised by the listing store."""
from __future__ import annotations


class TradeError(Exception):
    """Base error for listing operations."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(TradeError):
    """Raised when input is malformed, e.g. an empty HAVE or WANT."""


class NotFound(TradeError):
    """Raised when a listing id does not exist."""

    def __init__(self, listing_id: int) -> None:
        super().__init__(f"Trade #{listing_id} not found")
        self.listing_id = listing_id


class Forbidden(TradeError):
    """Raised when the actor is neither the owner nor privileged."""

    def __init__(self, listing_id: int, actor_id: str) -> None:
        super().__init__(f"{actor_id} may not change trade #{listing_id}")
        self.listing_id = listing_id
        self.actor_id = actor_id


class PreconditionFailed(TradeError):
    """Raised when the listing's status no longer allows the transition."""

    def __init__(self, listing_id: int, status: str) -> None:
        super().__init__(f"Trade #{listing_id} is already {status}")
        self.listing_id = listing_id
        self.status = status


class StorageUnavailable(TradeError):
    """Raised when the database cannot be reached or fails mid-operation."""
