"""FastAPI application for the helpdesk AI responder.

Provides the main application instance with routers and
exception handlers configured.
"""

import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("helpdesk").setLevel(logging.INFO)
from fastapi.responses import JSONResponse

from helpdesk.api.routes import chat, conversations
from helpdesk.db.connection import close_db, init_db
from helpdesk.errors import (
    HelpdeskError,
    MergeCycleError,
    NotFoundError,
    ToolApiError,
    UnauthorizedError,
)
from helpdesk.orchestrator.models import close_model_clients
from helpdesk.services.response_cache import close_cache_client

logger = logging.getLogger(__name__)

_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: schema setup on startup, client cleanup on shutdown."""
    global _startup_time

    _startup_time = _time.time()
    init_db()

    yield

    await close_cache_client()
    await close_model_clients()
    close_db()


app = FastAPI(
    title="Helpdesk AI API",
    description="AI response orchestration for the customer support helpdesk",
    version="0.1.0",
    lifespan=lifespan,
)


def _error_response(status_code: int, exc: HelpdeskError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": exc.code,
            "message": exc.message,
            "remediation": exc.remediation,
            "details": exc.details if exc.details else None,
        },
    )


@app.exception_handler(HelpdeskError)
async def helpdesk_error_handler(request: Request, exc: HelpdeskError) -> JSONResponse:
    """Handle HelpdeskError exceptions with consistent format."""
    return _error_response(400, exc)


@app.exception_handler(ToolApiError)
async def tool_api_error_handler(request: Request, exc: ToolApiError) -> JSONResponse:
    """Reject invalid tool parameters as E-2002."""
    error = HelpdeskError.from_code(
        "E-2002",
        field=exc.field or "unknown",
        reason=str(exc),
        details={"code": exc.code},
    )
    return _error_response(400, error)


@app.exception_handler(MergeCycleError)
async def merge_cycle_handler(request: Request, exc: MergeCycleError) -> JSONResponse:
    error = HelpdeskError.from_code(
        "E-1002",
        conversation_id=exc.conversation_id,
        details={"chain": exc.chain},
    )
    logger.error("merge_cycle conversation=%s chain=%s", exc.conversation_id, exc.chain)
    return _error_response(409, error)


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError) -> JSONResponse:
    logger.warning("staff_auth_rejected path=%s", exc.path)
    return _error_response(401, HelpdeskError.from_code("E-5002"))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


app.include_router(chat.router, prefix="/api")
app.include_router(conversations.router, prefix="/api")


@app.get("/health")
def health_check() -> dict:
    """Health check endpoint with version and uptime."""
    try:
        version = _pkg_version("helpdesk-ai")
    except Exception:
        version = "unknown"

    uptime = int(_time.time() - _startup_time) if _startup_time else 0
    return {"status": "healthy", "version": version, "uptime_seconds": uptime}
