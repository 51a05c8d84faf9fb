"""Changeflow Core FastAPI application."""
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from changeflow_core import __version__
from changeflow_core.config import get_settings

from .routers import automation, changes

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("changeflow-core")

logger.info("Starting Changeflow Core API")

# Create FastAPI app
app = FastAPI(
    title="Changeflow Core API",
    description="Change approval lifecycle and automation scheduler",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include business logic routers with /api/v1 prefix
app.include_router(changes.router, prefix="/api/v1/changes")
app.include_router(automation.router, prefix="/api/v1/automation")


@app.get("/")
def root():
    """Root endpoint with server info."""
    return {
        "name": "Changeflow Core API",
        "version": __version__,
        "docs": "/docs",
        "description": "Change approval lifecycle and automation scheduler",
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    logger.info(f"Serving on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
