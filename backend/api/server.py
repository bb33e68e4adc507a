# api/server.py
# ============================================================================
# COURSE PAYMENTS SERVICE - FASTAPI SERVER
# ============================================================================
# Payment endpoints, health check, error rendering and the background
# reconciliation loop.
# ============================================================================

import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.auth import AuthConfig
from api.payment_routes import router as payment_router
from database import close_database, init_database
from errors import PaymentServiceError, get_public_message
from pipeline.purchase_lifecycle import CheckoutConfig, PurchaseLifecycle
from services.access_grants import (
    AccessGrantService,
    IAccessGrantStore,
    InMemoryAccessGrantStore,
    PostgresAccessGrantStore,
)
from services.course_catalog import ICourseCatalog, InMemoryCourseCatalog, PostgresCourseCatalog
from services.tbank_client import TBankClient, TBankConfig
from storage.purchase_store import IPurchaseStore, InMemoryPurchaseStore, PostgresPurchaseStore
from tasks.reconciliation import PurchaseReconciler, ReconcilerConfig, get_reconciler_stats


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    # postgres | memory
    STORE_BACKEND = os.getenv("STORE_BACKEND", "postgres").lower()

    CORS_ORIGINS = [o.strip() for o in os.getenv("WEB_ORIGIN", "http://localhost:5173").split(",") if o.strip()]


config = ServerConfig()


def configure_logging(env: str = config.ENV) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if env == "production"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    )


configure_logging()
logger = structlog.get_logger().bind(component="server")


# =============================================================================
# DEPENDENCY WIRING
# =============================================================================

@dataclass
class Components:
    """Everything a request handler or the reconciler needs."""
    store: IPurchaseStore
    grant_store: IAccessGrantStore
    catalog: ICourseCatalog
    client: TBankClient
    checkout: CheckoutConfig = field(default_factory=CheckoutConfig.from_env)
    reconciler_config: ReconcilerConfig = field(default_factory=ReconcilerConfig.from_env)
    auth: AuthConfig = field(default_factory=AuthConfig.from_env)
    uses_database: bool = False

    @classmethod
    def from_env(cls, backend: str = config.STORE_BACKEND) -> "Components":
        client = TBankClient(TBankConfig.from_env())
        if backend == "memory":
            return cls(
                store=InMemoryPurchaseStore(),
                grant_store=InMemoryAccessGrantStore(),
                catalog=InMemoryCourseCatalog(),
                client=client,
            )
        return cls(
            store=PostgresPurchaseStore(),
            grant_store=PostgresAccessGrantStore(),
            catalog=PostgresCourseCatalog(),
            client=client,
            uses_database=True,
        )


def create_app(components: Optional[Components] = None) -> FastAPI:
    """Build the application. Tests pass in-memory components."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        parts = components or Components.from_env()
        logger.info("server_starting", env=config.ENV, store=type(parts.store).__name__)

        if parts.uses_database:
            await init_database()
        await parts.client.initialize()

        grants = AccessGrantService(parts.grant_store)
        app.state.auth_config = parts.auth
        app.state.lifecycle = PurchaseLifecycle(
            parts.store, parts.client, grants, parts.catalog, parts.checkout
        )
        app.state.reconciler = PurchaseReconciler(
            parts.store, parts.client, grants, parts.reconciler_config
        )

        if not parts.client.config.is_configured:
            logger.warning("tbank_not_configured")
        app.state.reconciler.start()

        yield

        logger.info("server_stopping")
        await app.state.reconciler.stop()
        await parts.client.close()
        if parts.uses_database:
            await close_database()

    app = FastAPI(
        title="Course Payments Service",
        description="T-Bank checkout, callbacks and reconciliation for course purchases",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(PaymentServiceError)
    async def payment_error_handler(request: Request, exc: PaymentServiceError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code)
        else:
            logger.info("request_rejected", path=request.url.path, code=exc.code)
        return error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields: List[str] = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        return error_response(400, "INVALID_REQUEST", details={"fields": fields})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return error_response(500, "INTERNAL_ERROR")

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        return {
            "ok": True,
            "uptime_seconds": round(uptime, 1),
            "reconciler": get_reconciler_stats(getattr(request.app.state, "reconciler", None)),
        }

    app.include_router(payment_router)
    return app


def error_response(status_code: int, code: str, message: Optional[str] = None, details=None) -> JSONResponse:
    """Render {error, message, details?}; details only outside production."""
    body = {"error": code, "message": message or get_public_message(code)}
    if details and config.ENV != "production":
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
