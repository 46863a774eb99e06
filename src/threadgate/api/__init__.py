"""ThreadGate HTTP API."""

from threadgate.api.router import health_router, router
from threadgate.api.webhooks import webhook_router

__all__ = ["health_router", "router", "webhook_router"]
