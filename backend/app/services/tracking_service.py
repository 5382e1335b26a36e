"""
Email Tracking Service.

Records opens (via pixel), clicks (via URL wrapping), delivery outcomes and
unsubscribes as engagement events, then triggers a refresh of the
campaign's analytics.

Every tracking request starts by resolving the ``sent`` event for its
tracking ID; campaign and recipient are always taken from that event, never
from the request. Requests for unknown tracking IDs record nothing.

Tracking IDs follow the format: {campaign_short}_{recipient_short}_{random}
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote
from uuid import uuid4

from app.core.config import settings
from app.core.exceptions import UnknownTrackingIdError
from app.core.unsubscribe_token import encode_unsubscribe_token, validate_unsubscribe_token
from app.db.postgres import async_session_maker, dialect_insert
from app.db.redis import redis_client
from app.models.engagement import EventType, UnsubscribeRecord
from app.schemas.engagement import (
    ClickEventData,
    DeliveryEventData,
    EngagementEventCreate,
    OpenEventData,
    SentEventData,
    UnsubscribeEventData,
)
from app.services.analytics_service import REFRESH_PENDING_KEY, analytics_service
from app.services.directory import (
    CampaignDirectory,
    ContactDirectory,
    NullCampaignDirectory,
    NullContactDirectory,
)
from app.services.event_store import EventFilter, EventStore
from app.services.forward_detection import detect_forward

logger = logging.getLogger(__name__)

# Bounce classification patterns, checked against SMTP response + diagnostic text
HARD_BOUNCE_PATTERNS = (
    "user unknown", "mailbox not found", "no such user",
    "does not exist", "invalid recipient", "unknown user",
    "invalid address", "bad destination", "undeliverable",
    "account disabled", "account has been disabled", "no mailbox here",
)
SOFT_BOUNCE_PATTERNS = (
    "mailbox full", "over quota", "insufficient storage",
    "try again", "temporarily", "busy", "unavailable",
    "connection timed out", "too many connections",
    "rate limit", "throttl", "defer",
)
SPAM_PATTERNS = (
    "spam", "abuse", "blacklist", "blocked",
    "reputation", "rbl", "dnsbl",
)

# Links that must not be rewritten through the click tracker
_UNTRACKED_LINK_MARKERS = ("mailto:", "tel:", "javascript:", "unsubscribe", "{{", "}}")
_HREF_PATTERN = re.compile(r'(<a\s[^>]*href=["\'])([^"\']+)(["\'][^>]*>)', re.IGNORECASE)


def hash_ip(ip_address: Optional[str]) -> Optional[str]:
    """One-way hash of an IP address; the raw address is never stored."""
    if not ip_address or ip_address == "Unknown":
        return None
    digest = hashlib.sha256(f"{settings.ip_hash_salt}:{ip_address.strip()}".encode())
    return digest.hexdigest()[:16]


def classify_bounce(bounce_data: Dict[str, Any]) -> Dict[str, Any]:
    """Classify a bounce from its SMTP code and response text.

    Returns bounce_type (hard_bounce / soft_bounce), category,
    should_suppress and a human-readable description. Unknown bounces are
    treated as soft to avoid premature suppression.
    """
    smtp_code = str(bounce_data.get("smtp_code") or "")
    text = " ".join([
        (bounce_data.get("smtp_response") or "").lower(),
        (bounce_data.get("diagnostic_message") or "").lower(),
    ])
    provided_type = (bounce_data.get("bounce_type") or "").lower()

    def matches(patterns) -> bool:
        return any(p in text for p in patterns)

    if smtp_code.startswith("5") or provided_type == "hard":
        if matches(SPAM_PATTERNS) and not matches(HARD_BOUNCE_PATTERNS):
            return _bounce("hard_bounce", "spam_block", True, "Blocked by spam filter or blacklist", smtp_code)
        if matches(HARD_BOUNCE_PATTERNS):
            return _bounce("hard_bounce", "invalid_recipient", True,
                           "Permanent delivery failure: recipient address is invalid", smtp_code)
        return _bounce("hard_bounce", "permanent_failure", True,
                       f"Permanent delivery failure (SMTP {smtp_code or 'unknown'})", smtp_code)

    if smtp_code.startswith("4") or provided_type == "soft":
        return _bounce("soft_bounce", "temporary_failure", False,
                       "Temporary failure, may succeed on retry", smtp_code)

    if matches(HARD_BOUNCE_PATTERNS):
        return _bounce("hard_bounce", "invalid_recipient", True, "Permanent delivery failure", smtp_code)
    if matches(SPAM_PATTERNS):
        return _bounce("hard_bounce", "spam_block", True, "Blocked by spam filter or blacklist", smtp_code)
    if matches(SOFT_BOUNCE_PATTERNS):
        return _bounce("soft_bounce", "temporary_failure", False, "Temporary delivery issue", smtp_code)

    return _bounce("soft_bounce", "unknown", False,
                   f"Unclassified bounce (SMTP {smtp_code or 'unknown'})", smtp_code)


def _bounce(bounce_type: str, category: str, suppress: bool, description: str, smtp_code: str) -> dict:
    return {
        "bounce_type": bounce_type,
        "bounce_category": category,
        "should_suppress": suppress,
        "description": description,
        "smtp_code": smtp_code or None,
    }


@dataclass
class UnsubscribeOutcome:
    email: str
    campaign_id: str
    campaign_name: Optional[str]
    newly_unsubscribed: bool


class TrackingService:
    """Turn tracking requests into engagement events.

    Open tracking uses a 1x1 transparent pixel embedded in the HTML email.
    Click tracking wraps all links through a redirect endpoint that records
    the click before forwarding to the original URL.
    """

    def __init__(
        self,
        campaigns: Optional[CampaignDirectory] = None,
        contacts: Optional[ContactDirectory] = None,
    ):
        self.campaigns = campaigns or NullCampaignDirectory()
        self.contacts = contacts or NullContactDirectory()

    def configure_directories(
        self,
        campaigns: Optional[CampaignDirectory] = None,
        contacts: Optional[ContactDirectory] = None,
    ) -> None:
        if campaigns is not None:
            self.campaigns = campaigns
        if contacts is not None:
            self.contacts = contacts

    # ------------------------------------------------------------------ #
    #  Send registration
    # ------------------------------------------------------------------ #

    def _generate_tracking_id(self, campaign_id: str, recipient_email: str) -> str:
        """Generate a unique tracking ID.

        The recipient part is a hash prefix so the address never appears in URLs.
        """
        campaign_short = re.sub(r"[^A-Za-z0-9]", "", campaign_id)[:8] or "unknown"
        recipient_short = hashlib.sha256(recipient_email.lower().encode()).hexdigest()[:8]
        random_suffix = uuid4().hex[:12]
        return f"{campaign_short}_{recipient_short}_{random_suffix}"

    def build_tracking_urls(self, tracking_id: str, campaign_id: str, recipient_email: str) -> dict:
        """Pixel, click and unsubscribe URLs for one send."""
        base = f"{settings.public_base_url}{settings.api_v1_prefix}"
        token = encode_unsubscribe_token(recipient_email, campaign_id)
        return {
            "tracking_id": tracking_id,
            "pixel_url": f"{base}/track/open?id={tracking_id}&campaign={quote(campaign_id, safe='')}",
            "click_base_url": f"{base}/track/click?id={tracking_id}",
            "unsubscribe_url": (
                f"{base}/unsubscribe?token={quote(token, safe='')}"
                f"&email={quote(recipient_email, safe='')}"
                f"&campaign={quote(campaign_id, safe='')}"
            ),
        }

    async def register_send(
        self,
        campaign_id: str,
        recipient_email: str,
        contact_id: Optional[str] = None,
        subject: Optional[str] = None,
        message_id: Optional[str] = None,
        html_body: Optional[str] = None,
    ) -> dict:
        """Mint a tracking ID, record the ``sent`` event and return the URLs.

        When ``html_body`` is given, the instrumented HTML is returned too.
        """
        tracking_id = self._generate_tracking_id(campaign_id, recipient_email)

        async with async_session_maker() as session:
            await EventStore(session).append(EngagementEventCreate(
                campaign_id=campaign_id,
                event_type=EventType.SENT,
                tracking_id=tracking_id,
                recipient_email=recipient_email,
                contact_id=contact_id,
                event_data=SentEventData(subject=subject, message_id=message_id),
            ))
            await session.commit()

        logger.info("Send registered: campaign=%s tracking_id=%s", campaign_id, tracking_id)
        await self._after_event(campaign_id)

        urls = self.build_tracking_urls(tracking_id, campaign_id, recipient_email)
        if html_body is not None:
            urls["html_body"] = self.instrument_html(html_body, urls)
        return urls

    def instrument_html(self, html_body: str, urls: dict) -> str:
        """Rewrite links for click tracking and add the pixel and unsubscribe footer.

        Skips mailto:/tel:/javascript: links, unsubscribe links, template
        placeholders and links that already go through the click tracker.
        """
        click_base_url = urls["click_base_url"]

        def _wrap_link(match):
            prefix, url, suffix = match.group(1), match.group(2), match.group(3)
            lowered = url.lower()
            if url.startswith(click_base_url) or any(m in lowered for m in _UNTRACKED_LINK_MARKERS):
                return match.group(0)
            return f"{prefix}{click_base_url}&url={quote(url, safe='')}{suffix}"

        body = _HREF_PATTERN.sub(_wrap_link, html_body)

        pixel = (
            f'<img src="{urls["pixel_url"]}" width="1" height="1" alt="" '
            'style="display:block;width:1px;height:1px;border:0;" />'
        )
        footer = (
            '<div style="margin-top:40px;padding-top:20px;border-top:1px solid #e5e7eb;'
            'text-align:center;font-size:12px;color:#9ca3af;">'
            f'<p><a href="{urls["unsubscribe_url"]}" style="color:#6b7280;">'
            "Unsubscribe from this campaign</a></p></div>"
        )
        return _insert_before_close(body, footer + pixel)

    # ------------------------------------------------------------------ #
    #  Tracking events
    # ------------------------------------------------------------------ #

    async def record_open(
        self,
        tracking_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        open_hint: str = "open",
        section: Optional[str] = None,
        campaign_hint: Optional[str] = None,
        contact_hint: Optional[str] = None,
    ) -> dict:
        """Record an open, or a forwarded open if the heuristic says so.

        Repeat opens are recorded as separate events; unique counting is
        left to aggregation.
        """
        now = datetime.utcnow()
        ip_hash = hash_ip(ip_address)

        async with async_session_maker() as session:
            store = EventStore(session)
            sent = await store.find_sent_event(tracking_id)
            if sent is None:
                logger.warning("Open event for unknown tracking_id: %s", tracking_id)
                return {"status": "unknown_tracking_id", "tracking_id": tracking_id}

            if campaign_hint and campaign_hint != sent.campaign_id:
                logger.warning(
                    "Open for tracking_id=%s names campaign=%s but was sent for campaign=%s",
                    tracking_id, campaign_hint, sent.campaign_id,
                )

            prior_opens = await store.query(EventFilter(
                tracking_id=tracking_id,
                event_types=[EventType.OPENED.value],
            ))
            detection = detect_forward(user_agent, ip_hash, prior_opens, now=now)
            event_type = EventType.FORWARDED if detection.is_forwarded else EventType.OPENED

            await store.append(EngagementEventCreate(
                campaign_id=sent.campaign_id,
                event_type=event_type,
                tracking_id=tracking_id,
                recipient_email=sent.recipient_email,
                contact_id=sent.contact_id,
                event_data=OpenEventData(
                    open_hint=open_hint,
                    section=section,
                    campaign_hint=campaign_hint,
                    contact_hint=contact_hint,
                    forward_detection=detection,
                ),
                ip_hash=ip_hash,
                user_agent=user_agent,
                created_at=now,
            ))
            await session.commit()
            campaign_id = sent.campaign_id

        logger.info(
            "Open recorded: campaign=%s tracking_id=%s type=%s confidence=%s",
            campaign_id, tracking_id, event_type.value, detection.confidence,
        )
        await self._after_event(campaign_id)

        return {
            "status": "recorded",
            "type": event_type.value,
            "tracking_id": tracking_id,
            "campaign_id": campaign_id,
            "forward_detection": detection.model_dump(),
        }

    async def record_click(
        self,
        tracking_id: str,
        url: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> dict:
        """Record a link click."""
        async with async_session_maker() as session:
            store = EventStore(session)
            sent = await store.find_sent_event(tracking_id)
            if sent is None:
                logger.warning("Click event for unknown tracking_id: %s", tracking_id)
                return {"status": "unknown_tracking_id", "tracking_id": tracking_id}

            await store.append(EngagementEventCreate(
                campaign_id=sent.campaign_id,
                event_type=EventType.CLICKED,
                tracking_id=tracking_id,
                recipient_email=sent.recipient_email,
                contact_id=sent.contact_id,
                event_data=ClickEventData(url=url),
                ip_hash=hash_ip(ip_address),
                user_agent=user_agent,
            ))
            await session.commit()
            campaign_id = sent.campaign_id

        logger.info("Click recorded: campaign=%s tracking_id=%s url=%s", campaign_id, tracking_id, url[:80])
        await self._after_event(campaign_id)

        return {
            "status": "recorded",
            "type": EventType.CLICKED.value,
            "tracking_id": tracking_id,
            "campaign_id": campaign_id,
            "url": url,
        }

    async def record_delivery_event(self, payload: Dict[str, Any]) -> dict:
        """Record a delivered / bounced / complained notification from the mail server.

        Raises:
            UnknownTrackingIdError: no send was registered for the tracking ID.
        """
        tracking_id = payload["tracking_id"]
        event_type = EventType(payload["event"])

        if event_type == EventType.BOUNCED:
            event_data = DeliveryEventData(**classify_bounce(payload))
        else:
            event_data = DeliveryEventData(smtp_code=payload.get("smtp_code") or None)

        async with async_session_maker() as session:
            store = EventStore(session)
            sent = await store.find_sent_event(tracking_id)
            if sent is None:
                logger.warning("%s event for unknown tracking_id: %s", event_type.value, tracking_id)
                raise UnknownTrackingIdError(tracking_id)

            await store.append(EngagementEventCreate(
                campaign_id=sent.campaign_id,
                event_type=event_type,
                tracking_id=tracking_id,
                recipient_email=sent.recipient_email,
                contact_id=sent.contact_id,
                event_data=event_data,
                created_at=_naive_utc(payload.get("occurred_at")),
            ))
            await session.commit()
            campaign_id = sent.campaign_id

        logger.info(
            "Delivery event recorded: campaign=%s tracking_id=%s type=%s",
            campaign_id, tracking_id, event_type.value,
        )
        await self._after_event(campaign_id)

        return {
            "status": "recorded",
            "type": event_type.value,
            "tracking_id": tracking_id,
            "campaign_id": campaign_id,
            "classification": event_data.model_dump(exclude_none=True),
        }

    async def process_unsubscribe(
        self,
        token: str,
        email: str,
        campaign_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        current_ms: Optional[int] = None,
    ) -> UnsubscribeOutcome:
        """Validate an unsubscribe link and record the opt-out.

        A repeated unsubscribe for the same (email, campaign) is a no-op: the
        record is upserted and the ``unsubscribed`` event is only appended
        when the record is new.

        Raises:
            TokenError: the token is malformed, mismatched or expired.
        """
        validate_unsubscribe_token(token, email, campaign_id, current_ms=current_ms)

        campaign_name = await self.campaigns.get_campaign_name(campaign_id)
        contact_id = await self.contacts.find_contact_id(email)
        ip_hash = hash_ip(ip_address)

        async with async_session_maker() as session:
            insert = dialect_insert(session)
            result = await session.execute(
                insert(UnsubscribeRecord)
                .values(
                    id=uuid4(),
                    email=email,
                    campaign_id=campaign_id,
                    contact_id=contact_id,
                    method="link",
                    ip_hash=ip_hash,
                    user_agent=user_agent,
                    unsubscribed_at=datetime.utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["email", "campaign_id"])
            )
            created = result.rowcount == 1

            if created:
                await EventStore(session).append(EngagementEventCreate(
                    campaign_id=campaign_id,
                    event_type=EventType.UNSUBSCRIBED,
                    recipient_email=email,
                    contact_id=contact_id,
                    event_data=UnsubscribeEventData(email=email),
                    ip_hash=ip_hash,
                    user_agent=user_agent,
                ))
            await session.commit()

        if created:
            logger.info("Unsubscribe processed: email=%s campaign=%s", email, campaign_id)
        else:
            logger.info("Repeat unsubscribe ignored: email=%s campaign=%s", email, campaign_id)
        await self._after_event(campaign_id)

        return UnsubscribeOutcome(
            email=email,
            campaign_id=campaign_id,
            campaign_name=campaign_name,
            newly_unsubscribed=created,
        )

    # ------------------------------------------------------------------ #
    #  Aggregation trigger
    # ------------------------------------------------------------------ #

    async def _after_event(self, campaign_id: str) -> None:
        """Refresh analytics inline or queue a refresh on the worker.

        Failures are logged only: the next refresh recomputes everything
        from the ledger.
        """
        try:
            if settings.analytics_refresh_mode == "deferred":
                await self._schedule_refresh(campaign_id)
            else:
                await analytics_service.refresh(campaign_id)
        except Exception as exc:
            logger.error("Analytics refresh failed for campaign=%s: %s", campaign_id, exc)

    async def _schedule_refresh(self, campaign_id: str) -> None:
        from app.celery_app import celery_app  # noqa: F401  binds shared tasks to the configured broker
        from app.tasks.analytics import refresh_campaign_analytics

        debounce = settings.analytics_refresh_debounce_seconds
        try:
            first = await redis_client.set_nx(
                REFRESH_PENDING_KEY.format(campaign_id=campaign_id), "1", ex=debounce,
            )
        except Exception as exc:
            logger.warning("Refresh debounce unavailable for campaign=%s: %s", campaign_id, exc)
            first = True

        if first:
            refresh_campaign_analytics.apply_async(args=[campaign_id], countdown=debounce)
            logger.debug("Queued analytics refresh for campaign=%s in %ss", campaign_id, debounce)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Event times are stored as naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _insert_before_close(html: str, fragment: str) -> str:
    for closing in ("</body>", "</html>"):
        index = html.lower().rfind(closing)
        if index != -1:
            return html[:index] + fragment + html[index:]
    return html + fragment


# Singleton instance
tracking_service = TrackingService()
