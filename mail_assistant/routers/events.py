"""
Server-sent events router for real-time mailbox notifications.

Provides a streaming endpoint that:
1. Authenticates via bearer token (``?token=`` or ``Authorization`` header)
2. Registers the stream with the event hub once the response body starts
3. Pushes ``connected``, ``email:new`` and ``email:sync_required`` events
"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from mail_assistant.core.deps import get_auth_verifier, get_event_hub
from mail_assistant.core.event_hub import EventHub
from mail_assistant.core.exceptions import Unauthenticated
from mail_assistant.core.security import AuthVerifier, extract_bearer_token
from mail_assistant.services.stream_service import StreamConnection
from mail_assistant.utils.sse import STREAM_HEADERS

router = APIRouter(tags=["events"])


@router.get("/events")
async def stream_events(
    request: Request,
    token: str | None = Query(None),
    hub: EventHub = Depends(get_event_hub),
    verifier: AuthVerifier = Depends(get_auth_verifier),
):
    """Long-lived text/event-stream of mailbox events for the caller."""
    connection = StreamConnection(hub, verifier)
    credential = extract_bearer_token(request.headers.get("authorization"), token)
    try:
        connection.authenticate(credential)
    except Unauthenticated as exc:
        return JSONResponse(status_code=401, content={"error": str(exc)})

    await connection.open()
    return StreamingResponse(
        connection.stream(request.is_disconnected),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
