"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from sandwich_engine.api.health import router as health_router
from sandwich_engine.config.settings import get_settings
from sandwich_engine.engine import initialize_engine, shutdown_engine

logger = logging.getLogger(__name__)


def create_app(start_engine: bool = True) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.engine = None
        if start_engine:
            logger.info("🚀 Starting sandwich engine service...")
            app.state.engine = await initialize_engine(get_settings())
            logger.info("✅ Service startup complete!")

        yield

        if app.state.engine is not None:
            logger.info("🛑 Shutting down sandwich engine service...")
            await shutdown_engine()
            logger.info("✅ Service shutdown complete!")

    app = FastAPI(
        title="Sandwich Engine API",
        description="Mempool sandwich detection and bundle execution",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health_router, tags=["health"])

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    uvicorn.run(
        create_app(),
        host=settings.host,
        port=settings.port,
        log_level="info" if not settings.debug else "debug",
    )
