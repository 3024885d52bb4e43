"""Gmail Pub/Sub push webhook handler."""

from __future__ import annotations

import logging

from fastapi import Request

from mail_assistant.core.exceptions import MalformedNotification
from mail_assistant.services.notification_decoder import decode_notification
from mail_assistant.services.push_service import PushPipeline
from mail_assistant.services.webhooks.base import read_body_safe

logger = logging.getLogger(__name__)


class GmailPushWebhookHandler:
    async def handle(self, request: Request, **kwargs):
        """
        Receive a Gmail push notification from Pub/Sub.

        The envelope is decoded synchronously. A malformed envelope is logged
        and acknowledged as dropped, since a non-2xx answer makes Pub/Sub
        redeliver it. Reconciliation and SSE fan-out are handed to a
        detached task, so the acknowledgment goes out immediately and well
        inside Pub/Sub's 10 second ack deadline whatever Gmail does afterwards.
        """
        pipeline: PushPipeline = kwargs.get("pipeline") or request.app.state.push_pipeline
        body = await read_body_safe(request)

        try:
            notification = decode_notification(body)
        except MalformedNotification as exc:
            logger.warning("Gmail push webhook dropped malformed envelope: %s", exc)
            return {"status": "dropped"}

        pipeline.accept(notification)
        return {"status": "accepted", "message_id": notification.delivery_id}
