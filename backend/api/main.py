"""
Store Health API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from core.errors import StoreHealthError

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Store Health API starting up", version=settings.app_version)
    yield
    logger.info("Store Health API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Store KPI monitoring, alerting and escalation engine",
    lifespan=lifespan,
)


@app.exception_handler(StoreHealthError)
async def store_health_error_handler(request: Request, exc: StoreHealthError):
    if exc.status_code >= 500:
        logger.error("api.error", path=request.url.path, error=exc.message, details=exc.details)
    else:
        logger.info("api.rejected", path=request.url.path, status_code=exc.status_code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "details": exc.details},
    )


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import alerts, escalations, kpis, stores, tasks, voice

app.include_router(kpis.router)
app.include_router(stores.router)
app.include_router(stores.dashboard_router)
app.include_router(alerts.router)
app.include_router(tasks.router)
app.include_router(escalations.router)
app.include_router(voice.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
