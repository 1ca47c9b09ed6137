"""
main.py — funnelbot FastAPI application entry point.

Start with: uvicorn funnelbot.main:app --reload --port 8000
(run from the repository root)
"""
import asyncio
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from funnelbot.config import settings
from funnelbot.errors import InvalidTransitionError, NotFoundError, TemplateVariablesError

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (auto-applied — no manual step needed)
      2. Initialize Redis connection pool (session snapshot cache)
      3. Create the outbound HTTP transport
      4. Start the delivery worker and the reminder sweep
    Shutdown:
      1. Stop background tasks, close transport and Redis
    """
    # --- 1. Database: run Alembic migrations ---
    package_dir = os.path.dirname(os.path.abspath(__file__))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=package_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    msg = result.stdout.strip() or "No pending migrations"
    logger.info("Alembic: %s", msg)

    # --- 2. Redis ---
    from funnelbot.cache import create_redis_pool, invalidate_session
    app.state.redis = await create_redis_pool()

    # --- 3. Transport — one client for the process (connection pool reuse) ---
    from funnelbot.delivery.transport import HttpTransport
    app.state.transport = HttpTransport()

    # --- 4. Background flows: worker drains due jobs, sweep checks timed reminders ---
    from funnelbot.delivery.worker import DeliveryWorker
    from funnelbot.scheduling.sweep import sweep_forever

    app.state.stop = asyncio.Event()
    app.state.tasks = []
    if settings.run_background_tasks:
        async def _invalidate(session_id: str) -> None:
            await invalidate_session(app.state.redis, session_id)

        worker = DeliveryWorker(app.state.transport, on_session_changed=_invalidate)
        app.state.tasks = [
            asyncio.create_task(worker.run_forever(app.state.stop), name="delivery-worker"),
            asyncio.create_task(
                sweep_forever(app.state.stop, on_session_changed=_invalidate), name="reminder-sweep"
            ),
        ]
    else:
        logger.warning("Background tasks disabled — no jobs will be delivered by this process")

    logger.info("funnelbot v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    app.state.stop.set()
    if app.state.tasks:
        await asyncio.gather(*app.state.tasks, return_exceptions=True)
        logger.info("Background tasks stopped")
    await app.state.transport.aclose()
    await app.state.redis.aclose()
    logger.info("Redis connection pool closed")
    logger.info("funnelbot shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="funnelbot API",
    version=settings.app_version,
    description=(
        "Timed outbound-messaging funnel: trigger, form and appointment reminders "
        "gated by business hours, with durable cancellable delivery jobs."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware — restricted to admin frontend origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers — registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Converts Pydantic / FastAPI 422 validation errors to standard format.
    Returns ALL field violations in one response.
    """
    details = []
    for error in exc.errors():
        # Build dot-notation field path, excluding the top-level 'body' loc
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """
    Converts FastAPI HTTPException to standard error format with semantic code.
    """
    code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _make_error_response(code="NOT_FOUND", message=str(exc), status_code=404)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(
    request: Request, exc: InvalidTransitionError
) -> JSONResponse:
    """Disallowed state change, e.g. a form webhook for an expired session."""
    return _make_error_response(
        code="CONFLICT",
        message=str(exc),
        details=[{"field": "status", "issue": exc.current}],
        status_code=409,
    )


@app.exception_handler(TemplateVariablesError)
async def template_variables_handler(
    request: Request, exc: TemplateVariablesError
) -> JSONResponse:
    return _make_error_response(
        code="VALIDATION_ERROR",
        message=str(exc),
        details=exc.details,
        status_code=422,
    )


@app.exception_handler(ValueError)
async def value_error_handler(
    request: Request, exc: ValueError
) -> JSONResponse:
    """
    Catches explicit ValueError raises from business logic (store.py, orchestrator.py).
    Surfaces as 422 VALIDATION_ERROR so the caller understands it's a data issue.
    """
    return _make_error_response(
        code="VALIDATION_ERROR",
        message=str(exc),
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """
    Returns service health status.
    Used by load balancers and deployment pipelines.
    """
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Funnel routers
# ---------------------------------------------------------------------------
from funnelbot.webhooks.routes import router as funnel_router  # noqa: E402

app.include_router(funnel_router)
