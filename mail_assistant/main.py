"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mail_assistant.core.async_utils import drain_detached
from mail_assistant.core.config import settings
from mail_assistant.core.deps import get_db
from mail_assistant.core.event_hub import EventHub
from mail_assistant.core.security import JWTAuthVerifier
from mail_assistant.db.session import SessionLocal, engine
from mail_assistant.services.gmail_service import make_gmail_provider_factory
from mail_assistant.services.history_service import HistoryReconciler
from mail_assistant.services.identity_store import SqlIdentityStore
from mail_assistant.services.push_service import PushPipeline
from mail_assistant.services.watch_service import WatchRegistrar

logger = logging.getLogger(__name__)

# Seconds in-flight push processing gets to finish on shutdown
SHUTDOWN_DRAIN_SECONDS = 10.0

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Mailbox addresses stay out of Sentry
    )
    logger.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from mail_assistant.core.rate_limit import limiter


# ============================================================================
# Service wiring
# ============================================================================

def init_services(app: FastAPI) -> None:
    """Build the process-wide services and attach them to ``app.state``."""
    hub = EventHub()
    store = SqlIdentityStore(SessionLocal)
    provider_factory = make_gmail_provider_factory(store)

    app.state.event_hub = hub
    app.state.identity_store = store
    app.state.auth_verifier = JWTAuthVerifier()
    app.state.watch_registrar = WatchRegistrar(store, provider_factory)
    app.state.push_pipeline = PushPipeline(HistoryReconciler(store, provider_factory), hub)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_services(app)
    if not settings.push_configured:
        logger.warning("GMAIL_PUSH_TOPIC not set; watch registration will fail")
    yield
    await app.state.event_hub.close_all()
    await drain_detached(timeout=SHUTDOWN_DRAIN_SECONDS)


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Mail Assistant API",
    description="Gmail push sync and real-time event streaming",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)

# ============================================================================
# Routers
# ============================================================================

from mail_assistant.routers import auth, events, webhooks

app.include_router(auth.router, prefix="/auth", tags=["auth"])

# Gmail Pub/Sub push (unauthenticated, rate limited)
app.include_router(webhooks.router, prefix="/webhook", tags=["webhooks"])

# Server-sent events stream
app.include_router(events.router)

from mail_assistant.core.telemetry import configure_telemetry

configure_telemetry(app, engine)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health(db: Session = Depends(get_db)):
    """
    Health check endpoint.

    Verifies database connectivity and reports live SSE connections.
    """
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        return JSONResponse(
            status_code=503,
            content={
                "status": "error",
                "database": "unavailable",
                "env": settings.ENV,
                "version": settings.VERSION,
            },
        )

    hub = getattr(app.state, "event_hub", None)
    return {
        "status": "ok",
        "env": settings.ENV,
        "version": settings.VERSION,
        "database": "ok",
        "push_configured": settings.push_configured,
        "oauth_configured": bool(settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET),
        "sse_connections": hub.count_connections() if hub is not None else 0,
    }


@app.get("/healthz")
def healthz():
    """Liveness probe; does not touch the database."""
    return {"status": "ok"}
