"""
Integration tests for the public tracking and unsubscribe endpoints.
"""

import asyncio
from unittest.mock import AsyncMock, patch

from sqlalchemy import func, select

from app.api.v1.tracking import TRACKING_PIXEL
from app.core.config import settings
from app.core.unsubscribe_token import MS_PER_DAY, encode_unsubscribe_token, now_ms
from app.db.postgres import async_session_maker
from app.models.engagement import CampaignAnalytics, EngagementEvent, UnsubscribeRecord
from app.services.event_store import EventFilter, EventStore

NO_CACHE = "no-store, no-cache, must-revalidate, proxy-revalidate"

# 1x1 GIF89a whose graphic control extension marks colour 0 as transparent
TRANSPARENT_GIF = bytes([
    0x47, 0x49, 0x46, 0x38, 0x39, 0x61, 0x01, 0x00, 0x01, 0x00, 0x80, 0x00, 0x00,
    0xff, 0xff, 0xff, 0x00, 0x00, 0x00, 0x21, 0xf9, 0x04, 0x01, 0x00, 0x00, 0x00,
    0x00, 0x2c, 0x00, 0x00, 0x00, 0x00, 0x01, 0x00, 0x01, 0x00, 0x00, 0x02, 0x02,
    0x44, 0x01, 0x00, 0x3b,
])


async def events_for(**filters):
    async with async_session_maker() as session:
        return await EventStore(session).query(EventFilter(**filters))


async def count_rows(model):
    async with async_session_maker() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def analytics_row(campaign_id="camp1"):
    async with async_session_maker() as session:
        result = await session.execute(
            select(CampaignAnalytics).where(CampaignAnalytics.campaign_id == campaign_id)
        )
        return result.scalar_one_or_none()


class TestOpenPixel:
    """Test cases for GET /track/open."""

    async def test_returns_pixel_with_no_cache_headers(self, client, seed_send):
        await seed_send()

        response = await client.get("/api/v1/track/open", params={"id": "abc"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/gif"
        assert response.content == TRANSPARENT_GIF
        assert response.headers["cache-control"] == NO_CACHE
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"
        assert response.headers["access-control-allow-origin"] == "*"

    def test_pixel_is_transparent(self):
        """The GCE packed byte must have the transparent-colour flag set."""
        assert len(TRACKING_PIXEL) == 43
        assert TRACKING_PIXEL[19:22] == b"\x21\xf9\x04"
        assert TRACKING_PIXEL[22] & 0x01
        assert TRACKING_PIXEL == TRANSPARENT_GIF

    async def test_repeated_opens_same_device(self, client, seed_send, user_agents):
        """Three opens from one device: three events, one unique open."""
        await seed_send(tracking_id="abc", campaign_id="camp1")
        headers = {"user-agent": user_agents["chrome"], "x-forwarded-for": "198.51.100.4"}

        for _ in range(3):
            response = await client.get("/api/v1/track/open", params={"id": "abc"}, headers=headers)
            assert response.status_code == 200

        opens = await events_for(tracking_id="abc", event_types=["opened"])
        assert len(opens) == 3
        assert all(e.campaign_id == "camp1" and e.recipient_email == "a@b.com" for e in opens)

        row = await analytics_row()
        assert row.opened_count == 3
        assert row.unique_opened_count == 1

    async def test_open_from_other_device_is_forwarded(self, client, seed_send, user_agents):
        await seed_send()

        await client.get(
            "/api/v1/track/open", params={"id": "abc"},
            headers={"user-agent": user_agents["chrome"], "x-forwarded-for": "198.51.100.4"},
        )
        await client.get(
            "/api/v1/track/open", params={"id": "abc"},
            headers={"user-agent": user_agents["firefox"], "x-forwarded-for": "203.0.113.9"},
        )

        events = await events_for(tracking_id="abc", event_types=["opened", "forwarded"])
        assert [e.event_type for e in events] == ["opened", "forwarded"]

        detection = events[1].event_data["forward_detection"]
        assert detection["is_forwarded"] is True
        assert detection["confidence"] >= 50
        assert "different_ip_address" in detection["indicators"]
        assert "different_browser" in detection["indicators"]

        row = await analytics_row()
        assert row.opened_count == 2
        assert row.unique_opened_count == 1

    async def test_ip_is_stored_hashed(self, client, seed_send):
        await seed_send()

        await client.get("/api/v1/track/open", params={"id": "abc"}, headers={"x-forwarded-for": "198.51.100.4, 10.0.0.1"})

        (event,) = await events_for(tracking_id="abc", event_types=["opened"])
        assert event.ip_hash is not None
        assert len(event.ip_hash) == 16
        assert "198.51" not in event.ip_hash

    async def test_hints_are_stored_and_mismatching_campaign_ignored(self, client, seed_send):
        await seed_send(tracking_id="abc", campaign_id="camp1")

        await client.get("/api/v1/track/open", params={
            "id": "abc", "type": "reopen", "campaign": "other-campaign", "section": "footer",
        })

        (event,) = await events_for(tracking_id="abc", event_types=["opened"])
        assert event.campaign_id == "camp1"
        assert event.event_data["open_hint"] == "reopen"
        assert event.event_data["section"] == "footer"
        assert event.event_data["campaign_hint"] == "other-campaign"

    async def test_unknown_tracking_id_records_nothing(self, client):
        response = await client.get("/api/v1/track/open", params={"id": "unknown-id"})

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL
        assert await count_rows(EngagementEvent) == 0

    async def test_missing_id_still_returns_pixel(self, client):
        response = await client.get("/api/v1/track/open")

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL

    async def test_backend_failure_still_returns_pixel(self, client):
        with patch(
            "app.api.v1.tracking.tracking_service.record_open",
            new=AsyncMock(side_effect=RuntimeError("database unavailable")),
        ):
            response = await client.get("/api/v1/track/open", params={"id": "abc"})

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL
        assert response.headers["cache-control"] == NO_CACHE

    async def test_backend_timeout_still_returns_pixel(self, client):
        async def slow_record_open(*args, **kwargs):
            await asyncio.sleep(5)

        with patch.object(settings, "tracking_backend_timeout", 0.05), \
             patch("app.api.v1.tracking.tracking_service.record_open", new=slow_record_open):
            response = await client.get("/api/v1/track/open", params={"id": "abc"})

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL


class TestClickRedirect:
    """Test cases for GET /track/click."""

    async def test_click_is_recorded_and_redirected(self, client, seed_send):
        await seed_send()

        response = await client.get(
            "/api/v1/track/click", params={"id": "abc", "url": "https://example.com/pricing?plan=pro"},
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/pricing?plan=pro"
        (click,) = await events_for(tracking_id="abc", event_types=["clicked"])
        assert click.event_data == {"url": "https://example.com/pricing?plan=pro"}

        row = await analytics_row()
        assert row.clicked_count == 1
        assert row.unique_clicked_count == 1

    async def test_unknown_tracking_id_still_redirects(self, client):
        response = await client.get(
            "/api/v1/track/click", params={"id": "unknown-id", "url": "https://example.com"},
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com"
        assert await count_rows(EngagementEvent) == 0

    async def test_missing_url_is_bad_request(self, client):
        response = await client.get("/api/v1/track/click", params={"id": "abc"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Missing url parameter"

    async def test_backend_failure_still_redirects(self, client):
        with patch(
            "app.api.v1.tracking.tracking_service.record_click",
            new=AsyncMock(side_effect=RuntimeError("database unavailable")),
        ):
            response = await client.get(
                "/api/v1/track/click", params={"id": "abc", "url": "https://example.com"},
            )

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com"


class TestUnsubscribe:
    """Test cases for GET /unsubscribe."""

    async def test_unsubscribe_twice_counts_once(self, client):
        params = {
            "token": encode_unsubscribe_token("a@b.com", "camp1"),
            "email": "a@b.com",
            "campaign": "camp1",
        }

        first = await client.get("/api/v1/unsubscribe", params=params)
        second = await client.get("/api/v1/unsubscribe", params=params)

        assert first.status_code == 200
        assert second.status_code == 200
        assert "text/html" in first.headers["content-type"]
        assert "Successfully Unsubscribed" in first.text
        assert await count_rows(UnsubscribeRecord) == 1
        assert len(await events_for(campaign_id="camp1", event_types=["unsubscribed"])) == 1

        row = await analytics_row()
        assert row.unsubscribed_count == 1

    async def test_configured_directories_are_used(self, client):
        """Campaign name is shown escaped; the contact id lands on the record."""
        from app.services.tracking_service import tracking_service

        class Campaigns:
            async def get_campaign_name(self, campaign_id):
                return "<Spring> Launch"

        class Contacts:
            async def find_contact_id(self, email):
                return "contact-7"

        params = {
            "token": encode_unsubscribe_token("a@b.com", "camp1"),
            "email": "a@b.com",
            "campaign": "camp1",
        }
        original = (tracking_service.campaigns, tracking_service.contacts)
        tracking_service.configure_directories(campaigns=Campaigns(), contacts=Contacts())
        try:
            response = await client.get("/api/v1/unsubscribe", params=params)
        finally:
            tracking_service.configure_directories(*original)

        assert response.status_code == 200
        assert "&lt;Spring&gt; Launch" in response.text
        async with async_session_maker() as session:
            record = (await session.execute(select(UnsubscribeRecord))).scalar_one()
        assert record.contact_id == "contact-7"
        (event,) = await events_for(campaign_id="camp1", event_types=["unsubscribed"])
        assert event.contact_id == "contact-7"

    async def test_missing_params(self, client):
        response = await client.get("/api/v1/unsubscribe", params={"email": "a@b.com"})

        assert response.status_code == 400
        assert "Unsubscribe Failed" in response.text

    async def test_expired_token(self, client):
        params = {
            "token": encode_unsubscribe_token("a@b.com", "camp1", timestamp=now_ms() - 8 * MS_PER_DAY),
            "email": "a@b.com",
            "campaign": "camp1",
        }

        response = await client.get("/api/v1/unsubscribe", params=params)

        assert response.status_code == 400
        assert "Unsubscribe Failed" in response.text
        assert await count_rows(UnsubscribeRecord) == 0

    async def test_token_for_other_address(self, client):
        params = {
            "token": encode_unsubscribe_token("a@b.com", "camp1"),
            "email": "victim@b.com",
            "campaign": "camp1",
        }

        response = await client.get("/api/v1/unsubscribe", params=params)

        assert response.status_code == 400
        assert await count_rows(UnsubscribeRecord) == 0

    async def test_malformed_token(self, client):
        response = await client.get(
            "/api/v1/unsubscribe", params={"token": "garbage", "email": "a@b.com", "campaign": "camp1"},
        )

        assert response.status_code == 400

    async def test_backend_failure_serves_failure_page(self, client):
        params = {
            "token": encode_unsubscribe_token("a@b.com", "camp1"),
            "email": "a@b.com",
            "campaign": "camp1",
        }
        with patch(
            "app.api.v1.unsubscribe.tracking_service.process_unsubscribe",
            new=AsyncMock(side_effect=RuntimeError("database unavailable")),
        ):
            response = await client.get("/api/v1/unsubscribe", params=params)

        assert response.status_code == 500
        assert "Unsubscribe Failed" in response.text


class TestSendRegistration:
    """Test cases for POST /track/sends."""

    async def test_register_send_returns_urls(self, client):
        response = await client.post("/api/v1/track/sends", json={
            "campaign_id": "camp1",
            "recipient_email": "a@b.com",
            "subject": "Spring launch",
            "html_body": '<html><body><a href="https://example.com">Go</a></body></html>',
        })

        assert response.status_code == 201
        data = response.json()
        tracking_id = data["tracking_id"]
        assert tracking_id.startswith("camp1_")
        assert f"id={tracking_id}" in data["pixel_url"]
        assert "/api/v1/unsubscribe?token=" in data["unsubscribe_url"]
        assert f"track/click?id={tracking_id}&url=https%3A%2F%2Fexample.com" in data["html_body"]

        (sent,) = await events_for(tracking_id=tracking_id)
        assert sent.event_type == "sent"
        assert sent.event_data == {"subject": "Spring launch"}

        row = await analytics_row()
        assert row.sent_count == 1

    async def test_registered_urls_round_trip(self, client):
        data = (await client.post("/api/v1/track/sends", json={
            "campaign_id": "camp1", "recipient_email": "a@b.com",
        })).json()

        pixel = await client.get(data["pixel_url"].replace("http://track.test", ""))
        unsubscribe = await client.get(data["unsubscribe_url"].replace("http://track.test", ""))

        assert pixel.status_code == 200
        assert unsubscribe.status_code == 200
        row = await analytics_row()
        assert (row.sent_count, row.opened_count, row.unsubscribed_count) == (1, 1, 1)

    async def test_invalid_email_rejected(self, client):
        response = await client.post("/api/v1/track/sends", json={
            "campaign_id": "camp1", "recipient_email": "not-an-email",
        })

        assert response.status_code == 422


class TestDeliveryWebhook:
    """Test cases for POST /track/webhook."""

    async def test_hard_bounce(self, client, seed_send):
        await seed_send()

        response = await client.post("/api/v1/track/webhook", json={
            "tracking_id": "abc",
            "event": "bounced",
            "smtp_code": "550",
            "smtp_response": "5.1.1 User unknown",
        })

        assert response.status_code == 200
        assert response.json()["bounce_type"] == "hard_bounce"
        (bounce,) = await events_for(tracking_id="abc", event_types=["bounced"])
        assert bounce.event_data["bounce_category"] == "invalid_recipient"
        assert bounce.event_data["should_suppress"] is True

        row = await analytics_row()
        assert row.bounced_count == 1

    async def test_delivered_and_complained(self, client, seed_send):
        await seed_send()

        for event in ("delivered", "complained"):
            response = await client.post("/api/v1/track/webhook", json={"tracking_id": "abc", "event": event})
            assert response.status_code == 200

        row = await analytics_row()
        assert (row.delivered_count, row.complained_count) == (1, 1)

    async def test_unknown_tracking_id(self, client):
        response = await client.post("/api/v1/track/webhook", json={"tracking_id": "missing", "event": "delivered"})

        assert response.status_code == 404
        assert await count_rows(EngagementEvent) == 0

    async def test_unsupported_event(self, client):
        response = await client.post("/api/v1/track/webhook", json={"tracking_id": "abc", "event": "opened"})

        assert response.status_code == 422
