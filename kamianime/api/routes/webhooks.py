"""
kamianime.api.routes.webhooks — Website webhook ingress
========================================================

``POST /api/webhooks/gamification`` accepts one gamification event from
the website.  Credentials come from the ``X-Webhook-Signature`` header
(HMAC-SHA256 of the raw body), the ``X-API-Key`` header, or the body's
``apiKey`` field, in that order of preference.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Header, Request

from kamianime.api.deps import Bridge

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/gamification")
async def receive_gamification_webhook(
    request: Request,
    bridge: Bridge,
    x_webhook_signature: Annotated[str | None, Header()] = None,
    x_api_key: Annotated[str | None, Header()] = None,
):
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None

    accepted = await bridge.ingest_webhook(
        body,
        api_key=x_api_key,
        signature=x_webhook_signature,
        raw_body=raw,
    )
    return accepted.to_dict()
