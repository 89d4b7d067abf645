from __future__ import annotations
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from .config import Settings, get_settings
from .api.routers import health as health_router
from .api.routers import otp as otp_router
from .api.routers import email as email_router
from .api.routers import metrics as metrics_router
from .observability.logging import setup_logging
from .middleware.request_context import RequestContextMiddleware
from .observability.metrics import MetricsHTTPMiddleware
from .redis_client import redis
from .repos.otp_store import InMemoryOtpStore, OtpStore, RedisOtpStore
from .services.email_service import EmailService
from .services.otp_service import OtpService
from .workers import otp_sweeper

settings = get_settings()
setup_logging()
log = logging.getLogger(__name__)


def build_store(s: Settings) -> OtpStore:
    if s.OTP_STORE_BACKEND == "redis":
        return RedisOtpStore(redis, prefix=s.OTP_KEY_PREFIX, grace_seconds=s.OTP_STORE_GRACE_SECONDS)
    return InMemoryOtpStore(grace_seconds=s.OTP_STORE_GRACE_SECONDS)


def build_otp_service(s: Settings, store: OtpStore, email_service: EmailService) -> OtpService:
    return OtpService(
        store,
        email_service,
        ttl_seconds=s.OTP_TTL_SECONDS,
        max_attempts=s.OTP_MAX_ATTEMPTS,
        cas_retries=s.OTP_CAS_RETRIES,
    )


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _invalid_body(_: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid request body"})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(_: Request, exc: Exception):
        log.exception("unhandled error: %r", exc)
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


def create_app(
    *,
    store: Optional[OtpStore] = None,
    email_service: Optional[EmailService] = None,
    run_sweeper: bool = True,
) -> FastAPI:
    store = store if store is not None else build_store(settings)
    email_service = email_service if email_service is not None else EmailService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = None
        if run_sweeper and isinstance(store, InMemoryOtpStore):
            sweeper = asyncio.create_task(otp_sweeper.run_forever(store, settings.OTP_SWEEP_INTERVAL_SEC))
        log.info("otp service started store=%s", type(store).__name__)
        yield
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG, lifespan=lifespan)
    app.state.email_service = email_service
    app.state.otp_service = build_otp_service(settings, store, email_service)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[settings.REQUEST_ID_HEADER],
    )

    # then your custom middlewares
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(MetricsHTTPMiddleware)

    _register_error_handlers(app)

    app.include_router(health_router.router)
    app.include_router(otp_router.router)
    app.include_router(email_router.router)
    app.include_router(metrics_router.router)

    return app


app = create_app()


def main() -> None:
    uvicorn.run("skillport_otp.main:app", host=settings.APP_HOST, port=settings.APP_PORT)


if __name__ == "__main__":
    main()
