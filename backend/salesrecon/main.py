"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from salesrecon.config import get_settings
from salesrecon.db.session import SessionLocal
from salesrecon.errors import ReconciliationError, reconciliation_error_handler, request_validation_error_handler
from salesrecon.routers import reconcile
from salesrecon.services.container import build_services

logger = logging.getLogger(__name__)

settings = get_settings()


def _check_database() -> None:
    """Open one connection at process start so misconfiguration shows up early."""

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database check failed; continuing without startup connection.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level.upper())
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings, session_factory=SessionLocal)
    logger.info(
        "app.startup lock_backend=%s admin_owners=%d",
        settings.lock_backend,
        len(settings.admin_owner_ids),
    )
    _check_database()
    yield


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)

app.include_router(reconcile.router, tags=["reconcile"])


@app.get("/health")
def health() -> dict[str, str]:
    """Simple health check endpoint."""

    return {"status": "ok"}
