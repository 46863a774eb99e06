"""API dependencies."""

import logging
import secrets
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from threadgate.config import settings
from threadgate.db import base as db_base
from threadgate.engine.core import ThreadGateEngine
from threadgate.services import Services

logger = logging.getLogger("threadgate.api")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with db_base.async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_services(request: Request) -> Services:
    """Services built by the application lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Server is starting")
    return services


async def get_engine(
    session: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
) -> ThreadGateEngine:
    return ThreadGateEngine(session, services)


async def verify_api_key(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> None:
    """
    Verify the shared management API key.

    When no key is configured the API is open; that is only accepted
    outside production (see validate_auth_config).
    """
    if not settings.api_key:
        return
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing X-API-Key header")
    if not secrets.compare_digest(
        x_api_key.encode("utf-8", "replace"), settings.api_key.encode("utf-8")
    ):
        raise HTTPException(status_code=401, detail="Invalid API key")


def validate_auth_config() -> None:
    """
    Validate authentication configuration at startup.

    Raises:
        RuntimeError: If configuration is insecure for the current environment
    """
    if settings.env.value == "production" and not settings.api_key:
        raise RuntimeError(
            "SECURITY ERROR: THREADGATE_API_KEY must be set in production."
        )
    if not settings.webhook_secret:
        logger.warning("THREADGATE_WEBHOOK_SECRET not set, webhook signatures are not checked")
    if settings.api_key:
        logger.info(f"Management API key enabled for {settings.env.value}")
    else:
        logger.warning(f"Management API is open ({settings.env.value})")
