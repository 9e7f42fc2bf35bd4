"""
api/main.py -- FastAPI application entry point for SecureBox.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every store and collaborator once, hangs them on app.state,
and closes them again on shutdown. Route handlers only ever reach them through
request.app.state, which is what lets the test suite swap in its own.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.passwords import router as passwords_router
from api.routes.v1.users import router as users_router
from auth.accounts import AccountDirectory
from auth.store import AccountStore
from auth.throttle import LoginThrottle
from auth.tokens import TokenConfig, TokenIssuer
from core.captcha import CaptchaVerifier
from core.config import Settings, get_settings
from core.errors import ExternalServiceError, SecureBoxError, StorageError
from core.mailer import Mailer
from vault.files import CredentialFileStore
from vault.store import CredentialRecordStore

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("securebox.api")

# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings) -> None:
    """Construct stores and collaborators from settings and attach them to app.state.

    Order matters: the throttle and token issuer sit on top of the account
    store, and the credential store on top of the file store. The account
    store creates the shared schema (users first) before the credential store
    adds its table with the foreign key to users.
    """
    account_store = AccountStore(settings.database_url)
    throttle = LoginThrottle(
        account_store,
        max_failures=settings.max_failed_logins,
        window_seconds=settings.lockout_window_seconds,
        lockout_seconds=settings.lockout_seconds,
    )
    file_store = CredentialFileStore(settings.files_dir)

    app.state.settings = settings
    app.state.account_store = account_store
    app.state.throttle = throttle
    app.state.accounts = AccountDirectory(account_store, throttle, bcrypt_rounds=settings.bcrypt_rounds)
    app.state.token_issuer = TokenIssuer(TokenConfig.from_settings(settings), account_store)
    app.state.file_store = file_store
    app.state.credential_store = CredentialRecordStore(file_store, settings.database_url)
    app.state.captcha = CaptchaVerifier(
        settings.captcha_secret,
        verify_url=settings.captcha_verify_url,
        min_score=settings.captcha_min_score,
    )
    app.state.mailer = Mailer(
        settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        from_email=settings.smtp_from_email,
        use_tls=settings.smtp_use_tls,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("SecureBox API starting up")
    build_services(app, settings)
    if not app.state.mailer.configured:
        logger.warning("SMTP not configured -- password reset emails will not be sent")
    if not settings.captcha_secret:
        logger.warning("CAPTCHA_SECRET not set -- registration, login and reset requests will be rejected")
    logger.info("Stores initialized (files under %s)", settings.files_dir)

    yield

    app.state.credential_store.close()
    app.state.account_store.close()
    logger.info("SecureBox API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="SecureBox API",
    description="Credential vault with throttled login, session tokens, and per-user file storage.",
    version=API_VERSION,
    lifespan=lifespan,
    # Schema browsing is a development aid only.
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
    openapi_url="/openapi.json" if _settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time is captured around call_next so latency is
# reported on every response.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(passwords_router, prefix="/api/v1", tags=["Passwords"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(SecureBoxError)
async def securebox_error_handler(request: Request, exc: SecureBoxError) -> JSONResponse:
    """Map every domain error onto its status code and envelope.

    Storage and upstream failures carry a generic message; the chained cause
    goes to the log only.
    """
    if isinstance(exc, (StorageError, ExternalServiceError)):
        logger.error(
            "%s on %s %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc_info=exc.__cause__ or exc,
        )
    response = _envelope(exc.status_code, exc.code, exc.message, exc.detail)
    if request.url.path.startswith("/api/v1/auth/"):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _envelope(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405 methods)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    db_ok = request.app.state.account_store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=API_VERSION,
        components={"database": "ok" if db_ok else "unavailable"},
    )
