"""
FunnelFuel API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from core.errors import ConfigurationError, NotFoundError, TransientStorageError

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("FunnelFuel API starting up", version=settings.app_version)
    yield
    logger.info("FunnelFuel API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Funnel analytics: metric evaluation, staleness alerts, and split-test routing",
    lifespan=lifespan,
)


# ── Domain error mapping ────────────────────────────────────────────────────


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.warning("api.configuration_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(TransientStorageError)
async def storage_error_handler(request: Request, exc: TransientStorageError):
    logger.error("api.storage_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import alerts, funnels, metrics, split_tests  # noqa: E402

app.include_router(metrics.router)
app.include_router(funnels.router)
app.include_router(alerts.router)
app.include_router(split_tests.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
