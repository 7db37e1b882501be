"""
Webhook endpoints for provider push notifications.

Each body is logged as a WebhookEvent and normalized into InboundEvents
(see app/agent/webhook_events.py). Providers retry on non-2xx, so an
unknown user is acknowledged with accepted=false instead of an error.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from app.agent.webhook_events import WebhookHandler
from app.api.deps import get_dispatcher
from app.schemas import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


@router.post("/gmail", response_model=WebhookResponse)
async def gmail_webhook(request: Request, dispatcher=Depends(get_dispatcher)):
    """
    Gmail push. Accepts the Pub/Sub envelope
    {"message": {"data": "<base64 {emailAddress, historyId}>"}} or
    {"userId": ..., "eventType": "new_email"}.
    """
    body = await _json_body(request)
    try:
        outcome = await WebhookHandler(dispatcher).handle_gmail(body)
    except Exception as e:
        logger.error(f"[WEBHOOK] Gmail webhook error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return WebhookResponse(**outcome.to_dict())


@router.post("/calendar", response_model=WebhookResponse)
async def calendar_webhook(
    request: Request,
    dispatcher=Depends(get_dispatcher),
    channel_token: Optional[str] = Header(None, alias="X-Goog-Channel-Token"),
):
    """Google Calendar channel push; the channel token carries the user id."""
    body = await _json_body(request) if await request.body() else {}
    try:
        outcome = await WebhookHandler(dispatcher).handle_calendar(body, channel_token=channel_token)
    except Exception as e:
        logger.error(f"[WEBHOOK] Calendar webhook error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return WebhookResponse(**outcome.to_dict())


@router.post("/hubspot", response_model=WebhookResponse)
async def hubspot_webhook(request: Request, dispatcher=Depends(get_dispatcher)):
    """
    HubSpot push:
    {"userId": ..., "eventType": "contact.creation", "objectId": 123,
     "properties": {"email": ..., "firstname": ..., "lastname": ...}}
    """
    body = await _json_body(request)
    try:
        outcome = await WebhookHandler(dispatcher).handle_hubspot(body)
    except Exception as e:
        logger.error(f"[WEBHOOK] HubSpot webhook error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return WebhookResponse(**outcome.to_dict())
