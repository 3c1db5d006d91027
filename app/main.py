# app/main.py
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from app import models  # noqa: F401  (registreert SQLAlchemy modellen)
from app.core.errors import AuthError, UploadError, validation_error
from app.core.logging_config import logger, setup_logging
from app.core.security import AuthValidator
from app.core.settings import Settings, get_settings
from app.db import Base, SessionLocal
from app.infra.memory import MemoryMonitor, ProcessMemoryMonitor
from app.observability.metrics import router as metrics_router
from app.routers import images, uploads
from app.services.storage import BlobStore, get_blob_store
from app.services.upload_service import UploadService


def create_app(
    settings: Optional[Settings] = None,
    *,
    monitor: Optional[MemoryMonitor] = None,
    blob_store: Optional[BlobStore] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    settings = settings or get_settings()
    monitor = monitor or ProcessMemoryMonitor(settings)
    blob_store = blob_store or get_blob_store(settings)
    session_factory = session_factory or SessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=session_factory.kw["bind"])
        await app.state.upload_service.sessions.start()
        logger.info("startup", service=settings.APP_NAME, storage_backend=settings.STORAGE_BACKEND)
        try:
            yield
        finally:
            await app.state.upload_service.sessions.stop()
            logger.info("shutdown", service=settings.APP_NAME)

    app = FastAPI(title=settings.APP_NAME, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.auth_validator = AuthValidator(settings.ADMIN_TOKEN)
    app.state.upload_service = UploadService.build(
        settings, monitor=monitor, store=blob_store, session_factory=session_factory
    )

    # ----------------------------------------------------
    # Logging middleware
    # ----------------------------------------------------
    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        start = time.time()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=str(request.url.path),
        )
        logger.info("request_started")
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            logger.exception("request_failed")
            raise
        finally:
            latency_ms = round((time.time() - start) * 1000, 2)
            logger.info("request_finished", status_code=status_code, latency_ms=latency_ms)
            structlog.contextvars.clear_contextvars()

    # ----------------------------------------------------
    # Error handling
    # ----------------------------------------------------
    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        log = logger.error if exc.http_status >= 500 else logger.warning
        log("upload_error", category=exc.category.value, code=exc.code, retryable=exc.retryable, error=exc.message)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
        return JSONResponse(status_code=exc.http_status, content={"ok": False, "error": exc.to_dict()}, headers=headers)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        logger.warning("auth_failed", reason=str(exc))
        return JSONResponse(
            status_code=401,
            content={"ok": False, "error": {"type": "AuthError", "message": str(exc)}},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        err = validation_error(
            "Request body is invalid",
            code="bad_request",
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
        )
        return JSONResponse(status_code=err.http_status, content={"ok": False, "error": err.to_dict()})

    # ----------------------------------------------------
    # Health + routers
    # ----------------------------------------------------
    @app.get("/health", include_in_schema=True)
    def health() -> dict:
        stats = monitor.get_stats()
        return {
            "status": "ok",
            "memory_pressure": stats.pressure.value,
            "active_sessions": app.state.upload_service.sessions.active_count(),
        }

    app.include_router(uploads.router)
    app.include_router(images.router)
    app.include_router(metrics_router)  # /metrics
    return app


setup_logging()
app = create_app()
