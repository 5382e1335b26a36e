"""
Fail-open wrapper for public tracking endpoints.

A tracking request must never break the email it is embedded in: whatever
goes wrong while recording the event, the recipient still gets the pixel,
the redirect or a rendered page.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable

from fastapi import HTTPException

logger = logging.getLogger(__name__)


def fail_open(fallback: Callable[..., Any]):
    """Return ``fallback(**kwargs)`` when the endpoint raises.

    ``HTTPException`` is re-raised so endpoints can still reject bad input
    explicitly. The fallback receives the same keyword arguments FastAPI
    passed to the endpoint.
    """

    def decorator(endpoint):
        @functools.wraps(endpoint)
        async def wrapper(*args, **kwargs):
            try:
                return await endpoint(*args, **kwargs)
            except HTTPException:
                raise
            except Exception:
                logger.exception("%s failed, serving fallback response", endpoint.__name__)
                return fallback(**kwargs)

        return wrapper

    return decorator
