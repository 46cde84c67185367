"""
Main FastAPI application for the Popup Engine
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from popup_engine.config import settings
from popup_engine.api import (
    system,
    checkin,
    pricing,
    predictions,
    cancellation,
    trust,
    pipelines,
    settlement
)
from popup_engine.db import models  # noqa: F401 - registers tables on Base
from popup_engine.db.database import Base, engine
from popup_engine.errors import EngineError

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting Popup Engine...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")

    yield

    # Shutdown
    logger.info("Shutting down Popup Engine...")


app = FastAPI(
    title="Popup Engine",
    description="Verification, trust and settlement engine for leader-driven popups",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(system.router, tags=["System"])
app.include_router(checkin.router, prefix="/checkin", tags=["Check-in"])
app.include_router(pricing.router, prefix="/pricing", tags=["Pricing"])
app.include_router(predictions.router, prefix="/predict", tags=["Predictions"])
app.include_router(cancellation.router, prefix="/cancellation", tags=["Cancellation"])
app.include_router(trust.router, prefix="/trust", tags=["Trust"])
app.include_router(pipelines.router, prefix="/pipelines", tags=["Pipelines"])
app.include_router(settlement.router, prefix="/settlement", tags=["Settlement"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Popup Engine",
        "version": "1.0.0",
        "status": "running"
    }
