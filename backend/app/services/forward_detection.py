"""
Forwarded-open detection.

Scores whether an open pixel request came from someone other than the
original recipient, using the earlier opens recorded for the same tracking
ID. Each rule adds its weight when its predicate holds; the total is clamped
to 0..100 and an open counts as forwarded at 50 or above. Apart from a known
forwarding-service user agent, no single signal reaches the threshold alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from app.core.config import settings
from app.models.engagement import EventType
from app.schemas.engagement import ForwardDetection

FORWARD_THRESHOLD = 50

FORWARDING_SERVICE_SIGNATURES = (
    "Outlook-Mail-Forwarder",
    "Gmail-Forwarder",
    "Yahoo-Mail-Forward",
    "Exchange-Forward",
)


class PriorEvent(Protocol):
    """Attributes the detector reads from earlier events."""
    event_type: str
    ip_hash: Optional[str]
    user_agent: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class OpenContext:
    """Everything a rule may look at."""
    user_agent: Optional[str]
    ip_hash: Optional[str]
    prior_opens: Sequence[PriorEvent]
    now: datetime


@dataclass(frozen=True)
class ForwardRule:
    indicator: str
    weight: int
    predicate: Callable[[OpenContext], bool]


def parse_browser_family(user_agent: Optional[str]) -> str:
    """Map a user-agent string to a coarse browser family.

    Chrome is checked before Safari because Chrome user agents also
    contain "Safari".
    """
    if not user_agent:
        return "Other"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    if "Edge" in user_agent:
        return "Edge"
    if "Opera" in user_agent:
        return "Opera"
    return "Other"


def _known(value: Optional[str]) -> bool:
    return bool(value) and value != "Unknown"


def _different_ip(ctx: OpenContext) -> bool:
    if not _known(ctx.ip_hash):
        return False
    prior_ips = {e.ip_hash for e in ctx.prior_opens if _known(e.ip_hash)}
    return bool(prior_ips) and ctx.ip_hash not in prior_ips


def _different_browser(ctx: OpenContext) -> bool:
    if not _known(ctx.user_agent):
        return False
    current = parse_browser_family(ctx.user_agent)
    return any(
        parse_browser_family(e.user_agent) != current
        for e in ctx.prior_opens
        if _known(e.user_agent)
    )


def _rapid_succession(ctx: OpenContext) -> bool:
    if not ctx.prior_opens:
        return False
    last_open = max(e.created_at for e in ctx.prior_opens)
    elapsed_ms = (ctx.now - last_open).total_seconds() * 1000
    return elapsed_ms < settings.forward_rapid_succession_ms


def _forwarding_service(ctx: OpenContext) -> bool:
    ua = ctx.user_agent or ""
    return any(signature in ua for signature in FORWARDING_SERVICE_SIGNATURES)


FORWARD_RULES: tuple[ForwardRule, ...] = (
    ForwardRule("different_ip_address", 30, _different_ip),
    ForwardRule("different_browser", 25, _different_browser),
    ForwardRule("rapid_succession", 20, _rapid_succession),
    ForwardRule("forwarding_service_detected", 40, _forwarding_service),
)


def detect_forward(
    user_agent: Optional[str],
    ip_hash: Optional[str],
    prior_events: Sequence[PriorEvent],
    now: Optional[datetime] = None,
    rules: Sequence[ForwardRule] = FORWARD_RULES,
) -> ForwardDetection:
    """Score an open request against earlier events for the same tracking ID.

    Only prior ``opened`` events are considered; anything else in
    ``prior_events`` is ignored.
    """
    ctx = OpenContext(
        user_agent=user_agent,
        ip_hash=ip_hash,
        prior_opens=[e for e in prior_events if e.event_type == EventType.OPENED.value],
        now=now or datetime.utcnow(),
    )

    indicators = []
    score = 0
    for rule in rules:
        if rule.predicate(ctx):
            indicators.append(rule.indicator)
            score += rule.weight

    score = max(0, min(score, 100))
    return ForwardDetection(
        is_forwarded=score >= FORWARD_THRESHOLD,
        confidence=score,
        indicators=indicators,
    )
