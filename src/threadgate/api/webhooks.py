"""Webhook ingress endpoint."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from threadgate.api.deps import get_engine
from threadgate.config import settings
from threadgate.engine.core import ThreadGateEngine
from threadgate.engine.errors import PayloadUnparseable, SignatureInvalid
from threadgate.webhooks import normalize, verify_signature

logger = logging.getLogger("threadgate.api.webhooks")

webhook_router = APIRouter()


@webhook_router.post("/webhooks")
async def receive_webhook(
    request: Request,
    x_gitea_event: Optional[str] = Header(None, alias="X-Gitea-Event"),
    x_github_event: Optional[str] = Header(None, alias="X-GitHub-Event"),
    x_gitea_signature: Optional[str] = Header(None, alias="X-Gitea-Signature"),
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
    engine: ThreadGateEngine = Depends(get_engine),
):
    """
    Accept one forge delivery.

    Signature is checked against the raw body before anything is parsed.
    Failures while routing are reported as 500 with an error body so the
    forge records the failed delivery.
    """
    body = await request.body()

    if settings.webhook_secret:
        try:
            verify_signature(settings.webhook_secret, body, x_gitea_signature or x_hub_signature_256)
        except SignatureInvalid as e:
            logger.warning(f"Rejected webhook: {e.message}")
            return JSONResponse(status_code=401, content={"error": e.message})

    event_kind = x_gitea_event or x_github_event or "unknown"

    try:
        payload = json.loads(body)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    try:
        event = normalize(event_kind, payload)
    except PayloadUnparseable as e:
        logger.warning(f"Unparseable {event_kind} delivery: {e.message}")
        return JSONResponse(status_code=400, content={"error": e.message})

    try:
        result = await engine.route_webhook(event)
    except Exception as e:
        logger.error(f"Webhook processing error ({event_kind}): {e}", exc_info=True)
        await engine.session.rollback()
        return JSONResponse(status_code=500, content={"error": str(e)})

    return result.to_response()
