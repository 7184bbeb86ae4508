"""
main.py — courseweb FastAPI application entry point.

Start with: uvicorn courseweb.main:app --reload --port 8000
(run from the project root, where alembic.ini lives)
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from courseweb.config import settings
from courseweb.errors import AppError

# ---------------------------------------------------------------------------
# Logging: configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def run_migrations() -> None:
    """Apply pending Alembic migrations; raises RuntimeError on failure."""
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=PROJECT_ROOT,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    msg = result.stdout.strip() or "No pending migrations"
    logger.info("Alembic: %s", msg)


# ---------------------------------------------------------------------------
# Lifespan: startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (skipped when RUN_MIGRATIONS=false)
      2. Open the Redis pool used for presence and the change feed
    Shutdown:
      1. Close Redis pool
      2. Dispose the database engine
    """
    if settings.run_migrations:
        run_migrations()

    from courseweb.cache import create_redis_pool
    app.state.redis = await create_redis_pool()

    logger.info("courseweb v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await app.state.redis.aclose()
    logger.info("Redis connection pool closed")

    from courseweb.database import async_engine
    await async_engine.dispose()
    logger.info("courseweb shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="courseweb API",
    version=settings.app_version,
    description=(
        "Backend for the course documentation site: surveys, student API key "
        "lookup, live progress tracking and the admin views over them."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware: restricted to frontend origins from settings
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
def _make_error_response(message: str, status_code: int = 500) -> JSONResponse:
    """Build the standard {"error": message} response."""
    return JSONResponse(status_code=status_code, content={"error": message})


# ---------------------------------------------------------------------------
# Global exception handlers: registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return _make_error_response(exc.message, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Missing or malformed request fields are a 400 with every violation
    folded into one message, e.g. "surveyId: Field required; answers: Field required".
    """
    issues = []
    for error in exc.errors():
        # Dot-notation field path, excluding the top-level 'body' / 'query' loc
        field = ".".join(str(loc) for loc in error["loc"] if loc not in ("body", "query"))
        issues.append(f"{field}: {error['msg']}" if field else error["msg"])
    return _make_error_response("; ".join(issues) or "Invalid request", status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return _make_error_response(str(exc.detail), status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → message includes the exception type (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        return _make_error_response(f"Internal server error: {type(exc).__name__}: {exc}")
    return _make_error_response("Internal server error")


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from courseweb.api_keys.routes import router as api_keys_router  # noqa: E402
from courseweb.auth.routes import router as auth_router  # noqa: E402
from courseweb.progress.routes import router as progress_router  # noqa: E402
from courseweb.survey.routes import router as survey_router  # noqa: E402

app.include_router(auth_router)
app.include_router(api_keys_router)
app.include_router(survey_router)
app.include_router(progress_router)
