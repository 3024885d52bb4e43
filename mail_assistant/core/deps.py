"""FastAPI dependencies for authentication, database access, and app services."""

from typing import Generator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from mail_assistant.core.event_hub import EventHub
from mail_assistant.core.exceptions import Unauthenticated
from mail_assistant.core.security import AuthVerifier, extract_bearer_token
from mail_assistant.db.session import SessionLocal
from mail_assistant.services.identity_store import IdentityStore
from mail_assistant.services.push_service import PushPipeline
from mail_assistant.services.watch_service import WatchRegistrar


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Services are constructed once in main.lifespan and live on app.state.

def get_event_hub(request: Request) -> EventHub:
    return request.app.state.event_hub


def get_identity_store(request: Request) -> IdentityStore:
    return request.app.state.identity_store


def get_watch_registrar(request: Request) -> WatchRegistrar:
    return request.app.state.watch_registrar


def get_push_pipeline(request: Request) -> PushPipeline:
    return request.app.state.push_pipeline


def get_auth_verifier(request: Request) -> AuthVerifier:
    return request.app.state.auth_verifier


def get_current_identity(
    request: Request,
    verifier: AuthVerifier = Depends(get_auth_verifier),
) -> str:
    """
    Resolve the caller's identity from an ``Authorization: Bearer`` header.

    Raises:
        HTTPException 401: missing, invalid, or expired token
    """
    token = extract_bearer_token(request.headers.get("authorization"))
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    try:
        return verifier.verify(token)
    except Unauthenticated:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
