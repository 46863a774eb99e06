"""Webhook ingress: typed payloads, normalization and echo suppression."""

from threadgate.webhooks.normalizer import NormalizedEvent, WebhookRef, normalize
from threadgate.webhooks.signature import compute_signature, verify_signature

__all__ = [
    "NormalizedEvent",
    "WebhookRef",
    "compute_signature",
    "normalize",
    "verify_signature",
]
