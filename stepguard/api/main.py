"""
StepGuard API application.

Mounts the two-factor and health routers, maps StepGuardError to JSON
responses and stamps every response with a request id and security headers.
Responses under /account/two-factor are never cacheable.

    uvicorn stepguard.api.main:app --port 8000
"""
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from .routes import health_router, two_factor_router
from .routes.two_factor import NO_STORE_HEADERS, two_factor_exception_handler
from ..auth.errors import StepGuardError
from ..database.auth_db import get_auth_db

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
)


class RequestIdFilter(logging.Filter):
    """Default request_id for records logged outside a request."""
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = '-'
        return True


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format=LOG_FORMAT,
)
logging.getLogger().addFilter(RequestIdFilter())
logger = logging.getLogger(__name__)

API_TITLE = "StepGuard API"
API_DESCRIPTION = (
    "Step-up two-factor verification: authenticator enrollment, "
    "email-confirmed disable and recovery codes. "
    "Every step returns a short-lived ticket for the next one."
)
API_VERSION = os.getenv("APP_VERSION", "0.1.0")

TWO_FACTOR_PREFIX = "/account/two-factor"

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting StepGuard API v{API_VERSION}")
    try:
        get_auth_db().init_schema()
    except SQLAlchemyError as e:
        # Stores fall back per table, so a partial schema still serves requests
        logger.warning(f"Schema initialization skipped: {e}")
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    @app.middleware("http")
    async def stamp_response(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        started = time.time()

        response = await call_next(request)

        elapsed_ms = (time.time() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.2f}"

        path = request.url.path
        if path.startswith(TWO_FACTOR_PREFIX):
            response.headers.update(NO_STORE_HEADERS)
        if not path.startswith("/health"):
            logger.info(
                f"{request.method} {path} -> {response.status_code} ({elapsed_ms:.1f}ms)",
                extra={"request_id": request_id},
            )

        response.headers.update(SECURITY_HEADERS)
        return response

    app.add_exception_handler(StepGuardError, two_factor_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        problems = [
            f"{' -> '.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": "; ".join(problems), "code": "VALIDATION_ERROR"},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.error(f"Unhandled exception: {exc}", exc_info=True, extra={"request_id": request_id})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error.",
                "code": "INTERNAL_ERROR",
                "request_id": request_id,
            },
        )

    app.include_router(health_router)
    app.include_router(two_factor_router)

    @app.get("/", include_in_schema=False)
    async def root():
        return {"name": API_TITLE, "version": API_VERSION, "health": "/health"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("stepguard.api.main:app", host="0.0.0.0", port=8000)
