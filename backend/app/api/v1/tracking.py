"""
Public email tracking endpoints.

These endpoints are unauthenticated because they are embedded in outgoing
emails as pixel URLs and click-through links. The tracking ID is resolved
against its ``sent`` event; requests for unknown IDs are answered normally
but record nothing.

Routes:
    GET  /track/open      - 1x1 transparent pixel (records open)
    GET  /track/click     - Click redirect (records click, redirects)
    POST /track/sends     - Register an outgoing send, returns tracking URLs
    POST /track/webhook   - Delivery / bounce / complaint webhook from mail server
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse, Response

from app.core.config import settings
from app.core.exceptions import DuplicateSendError, UnknownTrackingIdError
from app.middleware.fail_open import fail_open
from app.middleware.rate_limit import client_ip
from app.schemas.engagement import (
    DeliveryWebhookPayload,
    SendRegistrationRequest,
    SendRegistrationResponse,
)
from app.services.tracking_service import tracking_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/track", tags=["Tracking"])

# Transparent 1x1 GIF pixel (43 bytes)
TRACKING_PIXEL = (
    b"\x47\x49\x46\x38\x39\x61\x01\x00\x01\x00\x80\x00\x00"
    b"\xff\xff\xff\x00\x00\x00\x21\xf9\x04\x01\x00\x00\x00"
    b"\x00\x2c\x00\x00\x00\x00\x01\x00\x01\x00\x00\x02\x02"
    b"\x44\x01\x00\x3b"
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Access-Control-Allow-Origin": "*",
}


def pixel_response(**_) -> Response:
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


def redirect_response(url: Optional[str] = None, **_) -> Response:
    if not url:
        raise HTTPException(status_code=400, detail="Missing url parameter")
    return RedirectResponse(url=url, status_code=302, headers=NO_CACHE_HEADERS)


@router.get("/open")
@fail_open(pixel_response)
async def track_open(
    request: Request,
    tracking_id: Optional[str] = Query(None, alias="id", description="Tracking ID"),
    open_type: str = Query("open", alias="type", description="open or reopen"),
    campaign: Optional[str] = Query(None, description="Campaign ID hint"),
    contact: Optional[str] = Query(None, description="Contact ID hint"),
    section: Optional[str] = Query(None, description="Email section the pixel sits in"),
):
    """Record an email open event and return a 1x1 transparent pixel.

    Embedded in emails as: <img src="{pixel_url}" width="1" height="1" />
    """
    if not tracking_id:
        logger.warning("Open request without tracking ID")
        return pixel_response()

    result = await asyncio.wait_for(
        tracking_service.record_open(
            tracking_id,
            user_agent=request.headers.get("user-agent"),
            ip_address=client_ip(request),
            open_hint="reopen" if open_type == "reopen" else "open",
            section=section,
            campaign_hint=campaign,
            contact_hint=contact,
        ),
        timeout=settings.tracking_backend_timeout,
    )
    logger.debug("Open handled for %s: %s", tracking_id, result.get("status"))
    return pixel_response()


@router.get("/click")
@fail_open(redirect_response)
async def track_click(
    request: Request,
    tracking_id: Optional[str] = Query(None, alias="id", description="Tracking ID"),
    url: Optional[str] = Query(None, description="Original destination URL"),
):
    """Record a link click and redirect to the original destination URL.

    Links in emails are rewritten to pass through this endpoint.
    """
    if not url:
        raise HTTPException(status_code=400, detail="Missing url parameter")
    if not tracking_id:
        logger.warning("Click request without tracking ID, redirecting to %s", url[:80])
        return redirect_response(url=url)

    await asyncio.wait_for(
        tracking_service.record_click(
            tracking_id,
            url,
            user_agent=request.headers.get("user-agent"),
            ip_address=client_ip(request),
        ),
        timeout=settings.tracking_backend_timeout,
    )
    return redirect_response(url=url)


@router.post("/sends", response_model=SendRegistrationResponse, status_code=status.HTTP_201_CREATED)
async def register_send(payload: SendRegistrationRequest):
    """Register an outgoing email and return its tracking URLs.

    Called by the sender right before delivery. When ``html_body`` is given
    the response carries the instrumented HTML.
    """
    try:
        return await tracking_service.register_send(
            campaign_id=payload.campaign_id,
            recipient_email=payload.recipient_email,
            contact_id=payload.contact_id,
            subject=payload.subject,
            message_id=payload.message_id,
            html_body=payload.html_body,
        )
    except DuplicateSendError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/webhook")
async def delivery_webhook(payload: DeliveryWebhookPayload):
    """Process a delivery status notification from the mail server.

    This endpoint should be configured as the delivery/bounce webhook URL
    in your mail server.
    """
    try:
        result = await tracking_service.record_delivery_event(payload.model_dump())
    except UnknownTrackingIdError:
        raise HTTPException(status_code=404, detail="Tracking ID not found")

    return {
        "status": "processed",
        "tracking_id": payload.tracking_id,
        "event": payload.event,
        "bounce_type": result.get("classification", {}).get("bounce_type"),
    }
