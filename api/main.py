"""
api/main.py -- FastAPI application entry point for Keyward.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware -- adds CORS headers for allowed browser origins
  2. log_requests   -- one log line per request with latency

Lifespan handles startup (store, role seeding, service wiring) and shutdown
(close DB connections) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.authentication import AuthenticationFlow
from auth.errors import AuthenticationFailedError, KeywardError
from auth.ledgers import ConfirmationTokenLedger, PrincipalLocks, SessionTokenLedger
from auth.notifier import notifier_from_settings
from auth.password_reset import PasswordResetFlow
from auth.profile import ProfileFlow
from auth.protocols import Hasher, Notifier
from auth.registration import RegistrationFlow
from auth.store import AuthStore
from auth.tokens import BcryptHasher, JwtSigner
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyward.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    state,
    store: AuthStore,
    settings: Settings,
    notifier: Optional[Notifier] = None,
    hasher: Optional[Hasher] = None,
) -> None:
    """Compose the ledgers and flows around store and attach them to app.state.

    Tests call this directly with an isolated store and a recording notifier.
    """
    hasher = hasher or BcryptHasher()
    notifier = notifier or notifier_from_settings(settings)
    signer = JwtSigner.from_settings(settings)
    sessions = SessionTokenLedger(store, signer, PrincipalLocks())
    confirmations = ConfirmationTokenLedger(store, ttl=timedelta(minutes=settings.confirmation_token_minutes))

    state.store = store
    state.sessions = sessions
    state.confirmations = confirmations
    state.registration = RegistrationFlow(store, store, hasher, confirmations, notifier, settings.base_url)
    state.authentication = AuthenticationFlow(store, hasher, signer, sessions)
    state.password_reset = PasswordResetFlow(store, hasher, confirmations, notifier, settings.base_url)
    state.profile = ProfileFlow(store)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store, seed the role catalog, wire the flows; close on shutdown."""
    settings = get_settings()
    logger.info("Keyward API starting up")
    store = AuthStore(settings.database_url)
    roles = store.ensure_roles(settings.seed_roles)
    logger.info("Role catalog ready (%s)", ", ".join(r.name for r in roles))
    wire_services(app.state, store, settings)

    yield

    app.state.store.close()
    logger.info("Keyward API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Keyward API",
    description="Admin and user credential lifecycle: registration, confirmation, sessions, password reset.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(KeywardError)
async def keyward_error_handler(request: Request, exc: KeywardError) -> JSONResponse:
    """Render a flow/ledger error with its own status and stable code.

    Login routes catch authentication failures themselves; anything of that
    family reaching here is still flattened to the generic code.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    if isinstance(exc, AuthenticationFailedError):
        detail = ErrorDetail(code=AuthenticationFailedError.code, message="Invalid username or password.")
    else:
        detail = ErrorDetail(code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(error=detail).model_dump())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
