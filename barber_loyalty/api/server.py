"""FastAPI application setup"""
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from barber_loyalty import __version__
from barber_loyalty.api.routes import router
from barber_loyalty.api.middleware import setup_cors, setup_error_handlers, setup_rate_limiting
from barber_loyalty.config import LOG_LEVEL, validate_config
from barber_loyalty.observability.metrics import init_metrics
from barber_loyalty.services.container import ServiceContainer, get_container, init_container

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO)
)

logger = logging.getLogger(__name__)


def create_api_application(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Create and configure FastAPI application

    Args:
        container: Pre-wired services (tests, embedding). When omitted the
            container is built from configuration at startup and the
            database pool is opened.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for FastAPI application"""
        # Startup
        logger.info("Starting API server...")
        if container is not None:
            init_container(container)
        else:
            validate_config()
            init_container()
        active = get_container()

        if active.uses_database and not active.db.is_initialized:
            await active.db.init_pool()
            logger.info("Database pool initialized")
            await active.redemption_store.ensure_schema()

        init_metrics(__version__)

        yield

        # Shutdown
        logger.info("Shutting down API server...")
        await active.aclose()
        if active.uses_database and active.db.is_initialized:
            await active.db.close_pool()
            logger.info("Database pool closed")

    app = FastAPI(
        title="Barber Loyalty API",
        description="Achievement progress, reward redemption and barber leaderboards",
        version=__version__,
        lifespan=lifespan
    )

    # Setup middleware
    setup_cors(app)
    setup_rate_limiting(app)
    setup_error_handlers(app)

    # Include routes
    app.include_router(router)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(exc)}
        )

    logger.info("FastAPI application created")

    return app


app = create_api_application()
