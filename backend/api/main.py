"""
SampleTrack API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.responses import service_error_handler
from core.config import get_settings
from core.errors import ServiceError
from core.logging_config import configure_logging

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    configure_logging()
    logger.info("SampleTrack API starting up", version=settings.app_version)
    yield
    logger.info("SampleTrack API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Aliquot ledger, shipment tracking and eCRF reconciliation for clinical-trial biobanks",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ServiceError, service_error_handler)

# Import and register routers
from api.v1.routers import aliquots, locations, shipments, tracking

app.include_router(locations.router)
app.include_router(aliquots.router)
app.include_router(shipments.router)
app.include_router(tracking.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for Cloud Run / load balancers."""
    return {"status": "healthy", "version": settings.app_version}
