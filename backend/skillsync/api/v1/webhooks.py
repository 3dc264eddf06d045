"""
Webhooks API

One endpoint per provider. The body is read raw: signatures are computed
over the exact bytes the provider sent.
"""

import logging

from fastapi import APIRouter, Depends, Request

from skillsync.api.deps import get_container, parse_provider
from skillsync.services.container import ServiceContainer

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Receive a provider webhook.

    200 with {"status": "accepted" | "duplicate" | "ignored"} once the event
    is logged (or was already), 401 on a signature mismatch, 400 on a
    malformed payload. Slack's url_verification gets its challenge back.
    """
    body = await request.body()
    result = await container.gateway.receive(parse_provider(provider), body, request.headers)
    return result.to_response()
