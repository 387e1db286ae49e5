from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from laos.api.error_handling import register_exception_handlers, service_error_response
from laos.api.routes import router
from laos.api.schemas import Envelope
from laos.config import Settings
from laos.logging import bind_account, bind_request_context, get_logger, set_correlation_id
from laos.service.authenticator import OutcomeKind
from laos.service.tokens import bearer

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from laos.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Laos API", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    """Run the request authenticator ahead of every route.

    A valid refresh token turns the request into a token exchange answered
    right here; a rejected one ends it with 403. Otherwise the principal (or
    None) is left on ``request.state`` for route dependencies.
    """
    from laos.service.runtime import get_runtime

    runtime = get_runtime()
    request.state.principal = None
    outcome = await runtime.authenticator.authenticate(request.url.path, request.headers)

    if outcome.kind == OutcomeKind.ROTATED:
        settings = runtime.settings
        envelope = Envelope(
            status="ok",
            data={"token_type": "bearer", "account_id": outcome.principal.account_id},
        )
        return JSONResponse(
            status_code=200,
            content=envelope.model_dump(mode="json"),
            headers={
                settings.access_token_header: bearer(outcome.tokens.access_token),
                settings.refresh_token_header: bearer(outcome.tokens.refresh_token),
            },
        )
    if outcome.kind == OutcomeKind.REJECTED:
        logger.warning(
            "refresh_exchange_rejected",
            path=request.url.path,
            method=request.method,
            reason=type(outcome.error).__name__,
        )
        return service_error_response(outcome.error)

    request.state.principal = outcome.principal
    if outcome.principal is not None:
        bind_account(outcome.principal.account_id)
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token-bearing responses must never be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs and the response with X-Request-ID (client-supplied or generated)."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    bind_request_context(path=request.url.path, method=request.method)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard because credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


# Added last so it wraps the authenticator's short-circuit responses too
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        _settings.access_token_header,
        _settings.refresh_token_header,
        "X-Request-ID",
    ],
    # Browsers only hand rotated tokens to scripts when the headers are exposed
    expose_headers=[
        _settings.access_token_header,
        _settings.refresh_token_header,
        "X-Request-ID",
    ],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Liveness plus an account-directory probe."""
    from laos.service.runtime import get_runtime

    runtime = get_runtime()
    verify = getattr(runtime.store, "verify_connection", None)
    if callable(verify):
        try:
            await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
            database = {"status": "healthy", "type": "postgres"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            database = {"status": "unhealthy", "type": "postgres"}
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            database = {"status": "unhealthy", "type": "postgres"}
    else:
        database = {"status": "healthy", "type": "memory"}

    healthy = database["status"] == "healthy"
    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": {"database": database},
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=payload)


def create_app() -> FastAPI:
    return app
