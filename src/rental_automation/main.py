"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from rental_automation.api.routes import router as api_router, set_manager
from rental_automation.config import settings
from rental_automation.core.manager import AutomationManager

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting rental automation application...")

    manager = AutomationManager(settings)
    set_manager(manager)
    await manager.start()

    logger.info("Application started successfully")

    yield

    # Shutdown
    logger.info("Shutting down rental automation application...")
    await manager.stop()
    set_manager(None)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Rental Automation",
    description="Keeps door codes and house modes in step with reservations",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(f"{request.method} {request.url.path}")
    return await call_next(request)


# Mount API routes
app.include_router(api_router, prefix="/api")


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "rental_automation.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
