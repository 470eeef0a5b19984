from .instagram_webhook import (
    InstagramWebhookHandler,
    WebhookEvent,
    WebhookEventKind,
    WebhookIngestResult,
)

__all__ = [
    "InstagramWebhookHandler",
    "WebhookEvent",
    "WebhookEventKind",
    "WebhookIngestResult",
]
