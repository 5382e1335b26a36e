"""
Public unsubscribe endpoint.

Linked from the footer of every tracked email. The link carries a signed
token bound to the recipient address and campaign; the page always renders
HTML, styled as success or failure.
"""

import asyncio
import html
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse

from app.core.config import settings
from app.core.exceptions import TokenError
from app.middleware.fail_open import fail_open
from app.middleware.rate_limit import client_ip
from app.services.tracking_service import tracking_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Tracking"])

PAGE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Access-Control-Allow-Origin": "*",
}


def failure_page(**_) -> HTMLResponse:
    return HTMLResponse(content=_unsubscribe_html(success=False), status_code=500, headers=PAGE_HEADERS)


@router.get("/unsubscribe", response_class=HTMLResponse)
@fail_open(failure_page)
async def unsubscribe(
    request: Request,
    token: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    campaign: Optional[str] = Query(None),
):
    """Validate an unsubscribe link and opt the recipient out of the campaign.

    Visiting the link again is harmless: the recipient stays unsubscribed and
    the page renders the same confirmation.
    """
    if not token or not email or not campaign:
        logger.warning("Unsubscribe request with missing parameters")
        return HTMLResponse(
            content=_unsubscribe_html(success=False, detail="The unsubscribe link is incomplete."),
            status_code=400,
            headers=PAGE_HEADERS,
        )

    try:
        outcome = await asyncio.wait_for(
            tracking_service.process_unsubscribe(
                token,
                email,
                campaign,
                user_agent=request.headers.get("user-agent"),
                ip_address=client_ip(request),
            ),
            timeout=settings.tracking_backend_timeout,
        )
    except TokenError as exc:
        logger.warning("Rejected unsubscribe token for %s (%s): %s", email, campaign, exc.reason.value)
        return HTMLResponse(
            content=_unsubscribe_html(success=False, detail="This unsubscribe link is invalid or has expired."),
            status_code=400,
            headers=PAGE_HEADERS,
        )

    return HTMLResponse(
        content=_unsubscribe_html(success=True, campaign_name=outcome.campaign_name),
        headers=PAGE_HEADERS,
    )


def _unsubscribe_html(
    success: bool,
    campaign_name: Optional[str] = None,
    detail: str = "",
) -> str:
    """Generate a simple unsubscribe HTML page."""
    if success:
        campaign_line = (
            f"<p>Campaign: <strong>{html.escape(campaign_name)}</strong></p>" if campaign_name else ""
        )
        body = f"""
        <div style="text-align:center;padding:60px 20px;">
            <h1 style="color:#10b981;">Successfully Unsubscribed</h1>
            <p style="color:#64748b;font-size:18px;">You have been successfully unsubscribed from our email campaigns.</p>
            {campaign_line}
            <p style="color:#64748b;">You will no longer receive marketing emails at this address.</p>
            <p style="color:#94a3b8;font-size:14px;margin-top:20px;">
                If you change your mind, you can re-subscribe by contacting us directly.
            </p>
        </div>
        """
    else:
        body = f"""
        <div style="text-align:center;padding:60px 20px;">
            <h1 style="color:#ef4444;">Unsubscribe Failed</h1>
            <p style="color:#64748b;font-size:18px;">We encountered an error while processing your unsubscribe request.</p>
            <p style="color:#64748b;">{html.escape(detail)}</p>
            <p style="color:#94a3b8;font-size:14px;margin-top:20px;">
                Please try again later or contact support if the issue persists.
            </p>
        </div>
        """

    title = "Unsubscribe Successful" if success else "Unsubscribe Failed"
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
</head>
<body style="margin:0;padding:0;background-color:#f8fafc;font-family:-apple-system,BlinkMacSystemFont,sans-serif;">
    <div style="max-width:500px;margin:0 auto;">
        {body}
        <p style="text-align:center;color:#94a3b8;font-size:12px;">This is an automated unsubscribe system.</p>
    </div>
</body>
</html>"""
