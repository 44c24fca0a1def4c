"""
Chat subscriptions.

- commands: pure parser from webhook updates to intents
- service: applies intents to the subscription ledger and replies to senders
"""

from subscriptions.commands import parse_command, parse_webhook
from subscriptions.service import HandleOutcome, SubscriptionService, WebhookAck

__all__ = [
    "parse_command",
    "parse_webhook",
    "HandleOutcome",
    "SubscriptionService",
    "WebhookAck",
]
