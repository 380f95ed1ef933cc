"""
FastAPI API Server.

Telephony backend for the mobile calling app: JSON call management
endpoints plus the Twilio webhooks that drive each call.

Start with:
    uvicorn callbridge.api_server:app --reload --port 3009
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from dotenv import load_dotenv
load_dotenv(".env.local")

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from callbridge.api.calls import router as calls_router
from callbridge.api.deps import get_services, shutdown_services
from callbridge.api.middleware import RequestIdMiddleware
from callbridge.api.webhooks import acknowledge_unrouted_callback, router as webhooks_router
from callbridge.config import get_settings
from callbridge.errors import CallbridgeError
from callbridge.logging_config import get_logger, setup_logging
from callbridge.workers.state_sweeper import StateSweeper

setup_logging()
logger = get_logger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle hooks."""
    services = app.dependency_overrides.get(get_services, get_services)()
    sweeper = StateSweeper(
        services.dedup,
        services.store,
        interval=services.settings.sweep_interval_seconds,
    )
    sweeper.start()
    logger.info(
        "api_server_starting",
        environment=services.settings.environment.value,
        state_backend=services.settings.state_backend.value,
    )
    yield
    logger.info("api_server_stopping")
    await sweeper.stop()
    await shutdown_services()


app = FastAPI(
    title="Callbridge API",
    description="Telephony backend for app-to-app and app-to-phone voice calls",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CallbridgeError)
async def callbridge_error_handler(request: Request, exc: CallbridgeError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        status=exc.status_code,
        error_type=type(exc).__name__,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("request_body_invalid", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request body"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    if exc.status_code == 404:
        acknowledged = await acknowledge_unrouted_callback(request)
        if acknowledged is not None:
            return acknowledged
    return await http_exception_handler(request, exc)


# Routers
app.include_router(calls_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "callbridge"}


@app.get("/", tags=["System"])
async def root() -> dict[str, str]:
    """API root."""
    return {
        "service": "Callbridge",
        "version": "0.1.0",
        "docs": "/docs",
    }
