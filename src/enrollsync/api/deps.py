"""FastAPI dependencies for inbound-notification authentication.

The webhook and status routes are called by Axcelerate and HubSpot, not by
users. When WEBHOOK_SHARED_SECRET is configured they must present it in
the X-Webhook-Secret header; when it is empty the check is disabled.
"""

from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from src.enrollsync.config import get_settings


async def verify_webhook_secret(
    x_webhook_secret: str | None = Header(default=None),
) -> None:
    """Reject the request unless the shared secret matches.

    Raises:
        HTTPException(401): Secret configured and header missing or wrong.
    """
    expected = get_settings().WEBHOOK_SHARED_SECRET
    if not expected:
        return
    if x_webhook_secret is None or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )
