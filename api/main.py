"""Main FastAPI application for the USDC bridge."""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from bridge import BridgeService
from config import BridgeConfig
from api.dependencies import set_bridge
from api.models import HealthResponse
from api.routes import transfers

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    logger.info("Starting USDC Bridge API...")

    load_dotenv(Path(".env"))
    config_file = os.getenv("BRIDGE_CONFIG")
    config = BridgeConfig.from_file(Path(config_file)) if config_file else BridgeConfig.from_env()

    bridge = BridgeService(config)
    await bridge.start()

    # Set global bridge instance for dependency injection
    set_bridge(bridge)
    logger.info("USDC Bridge API started successfully")

    yield

    # Shutdown
    logger.info("Stopping USDC Bridge API...")
    set_bridge(None)
    await bridge.stop()
    logger.info("USDC Bridge API stopped")


# Create FastAPI app
app = FastAPI(
    title="USDC Bridge API",
    description="REST API for burn-and-mint USDC transfers between chains",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers
app.include_router(transfers.router)


@app.get("/", response_model=HealthResponse)
async def root():
    """API health check."""
    return HealthResponse(
        status="online",
        service="USDC Bridge API",
        version=VERSION
    )


@app.get("/health")
async def health_check():
    """Simple health check for monitoring."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info"
    )
