"""
Unsubscribe token codec.

A token binds an email address and campaign to the moment it was issued.
Tokens are HS256-signed JWTs so the claims cannot be edited in transit;
validity is checked against the request's own email/campaign parameters and
a fixed age limit (7 days by default).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from jose import JWTError, jwt

from app.core.config import settings
from app.core.exceptions import TokenError, TokenErrorReason

ALGORITHM = "HS256"
MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class UnsubscribeClaims:
    email: str
    campaign_id: str
    timestamp: int  # milliseconds since the epoch


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_unsubscribe_token(
    email: str,
    campaign_id: str,
    timestamp: Optional[int] = None,
) -> str:
    """Issue a token for (email, campaign_id), stamped with the current time."""
    claims = {
        "email": email,
        "campaign_id": campaign_id,
        "timestamp": now_ms() if timestamp is None else timestamp,
    }
    return jwt.encode(claims, settings.tracking_secret, algorithm=ALGORITHM)


def decode_unsubscribe_token(token: str) -> UnsubscribeClaims:
    """Parse and verify a token.

    Raises:
        TokenError: MALFORMED if the signature or structure is invalid.
    """
    try:
        payload = jwt.decode(token, settings.tracking_secret, algorithms=[ALGORITHM])
    except JWTError as e:
        raise TokenError(TokenErrorReason.MALFORMED, f"Invalid unsubscribe token: {e}")

    email = payload.get("email")
    campaign_id = payload.get("campaign_id")
    timestamp = payload.get("timestamp")
    if (
        not isinstance(email, str)
        or not isinstance(campaign_id, str)
        or not isinstance(timestamp, int)
        or isinstance(timestamp, bool)
    ):
        raise TokenError(TokenErrorReason.MALFORMED, "Unsubscribe token is missing claims")

    return UnsubscribeClaims(email=email, campaign_id=campaign_id, timestamp=timestamp)


def validate_unsubscribe_token(
    token: str,
    email: str,
    campaign_id: str,
    current_ms: Optional[int] = None,
) -> UnsubscribeClaims:
    """Decode a token and check it against the request it arrived with.

    A token exactly ``unsubscribe_token_max_age_days`` old is still valid.

    Raises:
        TokenError: MALFORMED, MISMATCH or EXPIRED.
    """
    claims = decode_unsubscribe_token(token)

    if claims.email != email or claims.campaign_id != campaign_id:
        raise TokenError(TokenErrorReason.MISMATCH, "Token does not match this unsubscribe link")

    current_ms = now_ms() if current_ms is None else current_ms
    max_age_ms = settings.unsubscribe_token_max_age_days * MS_PER_DAY
    if current_ms - claims.timestamp > max_age_ms:
        raise TokenError(TokenErrorReason.EXPIRED, "Unsubscribe token has expired")

    return claims
