"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import bank_link, connections
from config import settings
from database import get_session_local, init_db
from logging_config import setup_logging
from services.audit_service import shutdown_audit_recorder
from services.consent_intent_service import ConsentIntentService

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables and expire stale consents on startup."""
    try:
        init_db()
    except Exception:
        logger.warning("Database initialisation failed on startup", exc_info=True)

    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        result = ConsentIntentService.expire_stale(db)
        db.commit()
        if result.intents_expired or result.connections_deleted:
            logger.info(
                "Startup consent expiry: %d intents expired, %d pending connections removed",
                result.intents_expired,
                result.connections_deleted,
            )
    except Exception:
        db.rollback()
        logger.warning("Consent expiry failed on startup", exc_info=True)
    finally:
        db.close()

    yield

    shutdown_audit_recorder()


app = FastAPI(
    title="Bank Link",
    description="Open Banking consent finalization and ledger sync",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(bank_link.router)
app.include_router(connections.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
