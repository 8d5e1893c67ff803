"""Main application entry point."""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Configure logging FIRST, before any other imports
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)

# Reduce noise from third-party libraries (must be set before importing them)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from app.api import router
from app.config import get_settings
from app.errors import ConfigError
from app.services import Trader
from app.trading_config import load_trading_config

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    trading_config = getattr(app.state, "trading_config", None)
    if trading_config is None:
        trading_config = load_trading_config(Path(settings.trading_config_path))

    logger.info("Starting QUIK trader...")
    trader = Trader(trading_config, settings)
    try:
        await trader.start()
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        try:
            await trader.stop()
        except Exception as cleanup_err:
            logger.warning(f"Error during startup cleanup: {cleanup_err}")
        raise  # Re-raise to prevent app from starting in broken state

    app.state.trader = trader

    yield

    # Shutdown
    app.state.trader = None
    await trader.stop()
    logger.info("Shutdown complete")


# Create FastAPI app with orjson for faster JSON serialization
app = FastAPI(
    title="QUIK Trader",
    description="Moving-average crossover trading agent for the QUIK terminal",
    version=VERSION,
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
)

# Include REST routes
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "QUIK Trader",
        "version": VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    trader = getattr(app.state, "trader", None)
    if trader is None:
        return {"status": "starting"}
    return {"status": "healthy", "connector": trader.connector.state.value}


def main():
    """Run the application."""
    import uvicorn

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    # Malformed configuration is fatal before anything starts
    try:
        app.state.trading_config = load_trading_config(Path(settings.trading_config_path))
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(2)

    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        lifespan="on",
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    app.state.server = server
    server.run()

    if not server.started:
        # Fatal startup error (schema, library, terminal connect)
        sys.exit(1)


if __name__ == "__main__":
    main()
