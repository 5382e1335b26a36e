"""
Exception types raised by the tracking and aggregation services.
"""

from __future__ import annotations

from enum import Enum


class TrackingError(Exception):
    """Base class for tracking pipeline errors."""


class DuplicateSendError(TrackingError):
    """A second ``sent`` event was appended for an existing tracking ID."""

    def __init__(self, tracking_id: str):
        super().__init__(f"Tracking ID already has a sent event: {tracking_id}")
        self.tracking_id = tracking_id


class UnknownTrackingIdError(TrackingError):
    """No ``sent`` event exists for the tracking ID."""

    def __init__(self, tracking_id: str):
        super().__init__(f"Unknown tracking ID: {tracking_id}")
        self.tracking_id = tracking_id


class TokenErrorReason(str, Enum):
    """Why an unsubscribe token was rejected."""
    MALFORMED = "malformed"
    MISMATCH = "mismatch"
    EXPIRED = "expired"


class TokenError(TrackingError):
    """Unsubscribe token rejected."""

    def __init__(self, reason: TokenErrorReason, detail: str = ""):
        super().__init__(detail or reason.value)
        self.reason = reason
