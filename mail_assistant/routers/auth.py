"""Auth router - current identity and Gmail watch registration."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from mail_assistant.core.deps import (
    get_current_identity,
    get_identity_store,
    get_watch_registrar,
)
from mail_assistant.core.exceptions import IdentityNotFound, WatchRegistrationFailed
from mail_assistant.schemas.auth import (
    MeResponse,
    StopWatchResponse,
    WatchInfo,
    WatchResponse,
    to_epoch_millis,
)
from mail_assistant.services.identity_store import IdentityStore
from mail_assistant.services.watch_service import WatchRegistrar

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/me", response_model=MeResponse)
def get_me(
    identity: str = Depends(get_current_identity),
    store: IdentityStore = Depends(get_identity_store),
    registrar: WatchRegistrar = Depends(get_watch_registrar),
):
    """Return the signed-in mailbox and its derived watch state."""
    record = store.get(identity)
    if record is None:
        raise HTTPException(status_code=404, detail="User not found")
    status = registrar.status(identity)
    return MeResponse(
        email=record.identity,
        name=record.name,
        picture=record.picture,
        watch=WatchInfo(
            state=status.kind.value,
            expiration=to_epoch_millis(record.watch_expiration),
            historyId=record.last_history_id,
        ),
    )


@router.post("/watch", response_model=WatchResponse)
async def register_watch(
    identity: str = Depends(get_current_identity),
    registrar: WatchRegistrar = Depends(get_watch_registrar),
):
    """
    Register Gmail push notifications for the signed-in mailbox.

    Skips the Gmail call while the current watch is valid for more than the
    renewal margin (default one hour); ``skipped`` reports that case.
    """
    try:
        result = await registrar.ensure_watch(identity)
    except IdentityNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    except WatchRegistrationFailed as exc:
        logger.error("Watch registration error: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))

    return WatchResponse(
        success=True,
        historyId=result.history_id,
        expiration=to_epoch_millis(result.expiration),
        skipped=result.skipped,
    )


@router.delete("/watch", response_model=StopWatchResponse)
async def stop_watch(
    identity: str = Depends(get_current_identity),
    registrar: WatchRegistrar = Depends(get_watch_registrar),
):
    """Stop Gmail push notifications for the signed-in mailbox."""
    try:
        await registrar.stop_watch(identity)
    except IdentityNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    except WatchRegistrationFailed as exc:
        logger.error("Watch stop error: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))
    return StopWatchResponse(success=True)
