"""
pulse.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn pulse.api.main:app --port 8000

or ``python -m pulse.api`` to serve on the configured ``dashboard_port``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from pulse.api.routes.admin import router as admin_router  # noqa: E402
from pulse.api.routes.platform import router as platform_router  # noqa: E402
from pulse.api.routes.public import router as public_router  # noqa: E402
from pulse.config import load_config  # noqa: E402
from pulse.errors import PulseError, new_correlation_id  # noqa: E402
from pulse.runtime import build_services  # noqa: E402

logger = logging.getLogger(__name__)

# State-integrity and expected failures are warnings; caller defects are errors.
_ERROR_LEVEL_CODES = frozenset({"USER_NOT_FOUND", "UNKNOWN_PLATFORM", "VALIDATION_ERROR"})


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — build services once for this process."""
    if getattr(app.state, "services", None) is None:
        cfg = load_config(os.getenv("PULSE_CONFIG", "config.yaml"))
        app.state.services = build_services(cfg)
    logger.info("Pulse API started (env=%s)", app.state.services.rules.environment)
    yield
    logger.info("Pulse API shutting down")


app = FastAPI(
    title="Pulse Engagement API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PulseError)
async def pulse_error_handler(request: Request, exc: PulseError):
    level = logging.ERROR if exc.code in _ERROR_LEVEL_CODES else logging.WARNING
    logger.log(
        level, "%s %s → %s: %s [%s]",
        request.method, request.url.path, exc.code, exc.message, exc.correlation_id,
    )
    body = exc.to_dict()
    body.pop("context", None)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    correlation_id = new_correlation_id()
    logger.exception(
        "Unhandled error on %s %s [%s]", request.method, request.url.path, correlation_id
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "Internal server error",
            "correlation_id": correlation_id,
        },
    )


# Mount routers
app.include_router(public_router, prefix="/api")
app.include_router(platform_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
