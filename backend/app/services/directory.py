"""
Lookups into the CRM's campaign and contact records.

Campaigns and contacts live in the main CRM database, which this service
does not own. The tracking service only needs two read-only lookups, so they
are expressed as protocols; deployments plug in a real implementation with
``tracking_service.configure_directories``.
"""

from __future__ import annotations

from typing import Optional, Protocol


class CampaignDirectory(Protocol):
    async def get_campaign_name(self, campaign_id: str) -> Optional[str]:
        ...


class ContactDirectory(Protocol):
    async def find_contact_id(self, email: str) -> Optional[str]:
        ...


class NullCampaignDirectory:
    """Used when no CRM lookup is configured."""

    async def get_campaign_name(self, campaign_id: str) -> Optional[str]:
        return None


class NullContactDirectory:
    """Used when no CRM lookup is configured."""

    async def find_contact_id(self, email: str) -> Optional[str]:
        return None
