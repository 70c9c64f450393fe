from mediapulse.webhooks.service import DiscordWebhook, WebhookEvent, WebhookNotifier

__all__ = [
    "DiscordWebhook",
    "WebhookEvent",
    "WebhookNotifier",
]
