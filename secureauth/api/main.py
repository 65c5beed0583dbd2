"""
SecureAuth REST API - Main Application.

FastAPI application for password sign-in with TOTP and passkey second
factors.

Usage:
    # Development
    uvicorn secureauth.api.main:app --reload --port 8080

    # Production
    uvicorn secureauth.api.main:app --host 0.0.0.0 --port 8080 --workers 4
"""
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from .routes import auth_router, dashboard_router, health_router
from ..auth.errors import AccountLocked, AuthFlowError

API_VERSION = os.getenv("APP_VERSION", "0.1.0")
API_DESCRIPTION = """
**Password sign-in with a second factor**

## Sign-in flow

1. Sign up: `POST /auth/signup`, or log in: `POST /auth/login`
2. Send the returned `flow_token` as `X-Flow-Token` on every following step
3. First time: `GET /auth/setup-2fa` then `POST /auth/setup-2fa`
4. Otherwise: `POST /auth/choose-2fa` with `code` or `passkey`, then
   `POST /auth/verify-2fa` or `POST /auth/verify-passkey`
5. When the state is `authenticated`, use `session.access_token`:
   `Authorization: Bearer <token>`

## Rate Limits

- Signup: 5 per hour per IP
- Login: 10 per 15 minutes per IP; accounts lock for 15 minutes after 5
  failed passwords
"""

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    # Passkey ceremonies need the publickey-credentials features
    "Permissions-Policy": (
        "geolocation=(), microphone=(), camera=(), "
        "publickey-credentials-get=(self), publickey-credentials-create=(self)"
    ),
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store",
}


class RequestIdFilter(logging.Filter):
    """Default request_id for records logged outside a request."""

    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = "-"
        return True


def configure_logging() -> None:
    """Root logging from LOG_LEVEL and LOG_FORMAT."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    fmt = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
    )
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=fmt)
    # Logger filters are not inherited by child loggers; handler filters are
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIdFilter())


configure_logging()
logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error_body(error: str, detail, code: str) -> dict:
    return {"error": error, "detail": detail, "code": code}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables on startup."""
    logger.info(f"Starting SecureAuth API v{API_VERSION}")

    from ..database.auth_db import get_auth_db
    try:
        get_auth_db().init_schema()
    except SQLAlchemyError as e:
        logger.warning(f"Database initialization skipped: {e}")

    yield

    logger.info("Shutting down SecureAuth API")


def register_exception_handlers(app: FastAPI) -> None:
    """Render errors as {error, detail, code}."""

    @app.exception_handler(AuthFlowError)
    async def auth_flow_error_handler(request: Request, exc: AuthFlowError):
        logger.info(f"[{_request_id(request)}] {type(exc).__name__}: {exc.message}")
        headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, AccountLocked) else None
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(type(exc).__name__, exc.message, exc.code),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body("Validation Error", "; ".join(problems), "VALIDATION_ERROR"),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
        detail = str(exc) if os.getenv("APP_ENV") == "development" else None
        body = _error_body("Internal Server Error", detail, "INTERNAL_ERROR")
        body["request_id"] = request_id
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


def create_app() -> FastAPI:
    """Build the FastAPI application with middleware, handlers and routers."""
    app = FastAPI(
        title="SecureAuth API",
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:8080").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.2f}"
        response.headers.update(SECURITY_HEADERS)

        # Health probes are too frequent to log
        if not request.url.path.startswith("/health"):
            logger.info(
                f"[{request_id}] {request.method} {request.url.path} "
                f"-> {response.status_code} ({elapsed_ms:.1f}ms)"
            )
        return response

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(dashboard_router)

    @app.get("/", include_in_schema=False)
    async def root():
        return RedirectResponse(url="/dashboard", status_code=status.HTTP_303_SEE_OTHER)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("secureauth.api.main:app", host="0.0.0.0", port=8080, reload=True)
