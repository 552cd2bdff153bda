"""
Main FastAPI application for the presence certification service
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from presence_cert import __version__
from presence_cert.config import settings
from presence_cert.api import system, eligibility, certification, scan
from presence_cert.db.database import create_tables

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
    logger.info("Starting presence certification service...")
    try:
        create_tables()
        logger.info("Database tables ready")
    except Exception as e:
        logger.error(f"Error creating tables: {e}")

    yield

    # Shutdown
    logger.info("Shutting down presence certification service...")


app = FastAPI(
    title="Presence Certification Service",
    description="Certifies that a registrant was physically present at an event",
    version=__version__,
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

# Include routers
app.include_router(system.router, tags=["System"])
app.include_router(eligibility.router)
app.include_router(certification.router)
app.include_router(scan.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Presence Certification",
        "version": __version__,
        "status": "running"
    }
