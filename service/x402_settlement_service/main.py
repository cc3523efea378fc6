"""FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from x402_settlement_service.api.v1 import router as v1_router
from x402_settlement_service.core.config import Settings, settings
from x402_settlement_service.core.errors import InternalError, RateLimitExceeded, SettlementError
from x402_settlement_service.db.session import AsyncSessionLocal, engine
from x402_settlement_service.middleware.rate_limit import RateLimiter
from x402_settlement_service.runtime import SettlementRuntime, build_runtime

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    owns_runtime = app.state.runtime is None
    if owns_runtime:
        app.state.runtime = build_runtime(app.state.settings, AsyncSessionLocal)
    runtime: SettlementRuntime = app.state.runtime
    await runtime.start()
    logger.info("Application startup complete")
    yield
    # Shutdown
    logger.info("Application shutting down...")
    await runtime.stop()
    if owns_runtime:
        await engine.dispose()


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitExceeded):
        retry_after = exc.details.get("retry_after_seconds", 0)
        headers = {"Retry-After": str(int(retry_after) + 1)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
    error = InternalError(message="Storage unavailable")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": ".".join(str(part) for part in item["loc"]), "msg": item["msg"]}
        for item in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "error_code": "INVALID_INPUT",
            "message": "Request validation failed",
            "details": {"errors": errors},
        },
    )


def create_app(
    runtime: Optional[SettlementRuntime] = None,
    app_settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the API application.

    Args:
        runtime: Pre-built runtime; when omitted one is built at startup
        app_settings: Settings to use, the process settings by default

    Returns:
        FastAPI application
    """
    app_settings = app_settings or (runtime.settings if runtime else settings)

    app = FastAPI(
        title="X402 Settlement API",
        description="Cross-chain stablecoin settlement on x402 v2 authorizations",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.runtime = runtime
    app.state.rate_limiter = RateLimiter(rpm=app_settings.RATE_LIMIT_RPM)

    app.add_exception_handler(SettlementError, settlement_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routers
    app.include_router(v1_router, prefix="/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
