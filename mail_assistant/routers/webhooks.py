"""Webhooks router - external push notifications."""

from fastapi import APIRouter, Depends, Request

from mail_assistant.core.deps import get_push_pipeline
from mail_assistant.core.rate_limit import limiter, webhook_limit
from mail_assistant.services.push_service import PushPipeline
from mail_assistant.services.webhooks import registry

router = APIRouter()


@router.post("/gmail")
@limiter.limit(webhook_limit)
async def receive_gmail_push(
    request: Request,
    pipeline: PushPipeline = Depends(get_push_pipeline),
):
    """
    Receive Gmail push notifications from Pub/Sub.

    When a user receives new mail, Pub/Sub posts here. The response is
    sent before the new messages are fetched; results reach the user over
    the /events stream.
    """
    handler = registry.get_handler("gmail")
    return await handler.handle(request, pipeline=pipeline)


@router.get("/health")
def webhook_health():
    """Health check for the webhook endpoint."""
    return {"status": "ok", "service": "gmail-webhook"}
