"""ThreadGate main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from threadgate.api import health_router, router, webhook_router
from threadgate.api.deps import validate_auth_config
from threadgate.config import settings
from threadgate.db import base as db_base
from threadgate.services import Services
from threadgate.tasks.sweep import start_action_sweep, stop_action_sweep

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("threadgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting ThreadGate server...")
    logger.info(f"Environment: {settings.env.value}")
    logger.info(f"Bot login: {settings.bot_login}")

    # Fail fast if insecure
    validate_auth_config()

    await db_base.init_db()
    logger.info("Database initialized")

    services = Services.build(db_base.async_session_factory)
    app.state.services = services
    logger.info(
        f"Services ready (notifications: {'on' if services.notifications.enabled else 'off'},"
        f" dispatch rules: {len(services.dispatch_rules)})"
    )

    await start_action_sweep()
    logger.info("Action sweep task started")

    yield

    logger.info("Shutting down ThreadGate server...")
    await stop_action_sweep()
    await services.aclose()
    app.state.services = None
    await db_base.close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title="ThreadGate",
    description="Event routing and task supervision for an autonomous coding agent",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(webhook_router)
app.include_router(router)


def main():
    """Entry point for the application."""
    uvicorn.run(
        "threadgate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
