"""
Chat message templates.

This module provides the text of every message the bot sends: replies to
subscribe/unsubscribe commands, help and usage hints, and the caption of a
drop announcement.

Design decisions:
- Templates are simple strings with {variable} placeholders
- Drop captions use Telegram's HTML parse mode; store-supplied text is escaped
- Captions are capped at Telegram's caption limit; the description is what
  gets shortened
"""

import html
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from shared.models import Drop


# Telegram rejects photo captions longer than this
CAPTION_MAX_LENGTH = 1024

DEEP_LINK_PREFIX = "subscribe_"


class MessageType(str, Enum):
    """Every kind of message the bot sends."""
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    STORE_NOT_FOUND = "store_not_found"
    HELP = "help"
    SUBSCRIBE_USAGE = "subscribe_usage"
    UNSUBSCRIBE_USAGE = "unsubscribe_usage"


@dataclass
class MessageTemplate:
    """A plain-text chat reply."""
    message_type: MessageType
    text: str

    def render(self, **kwargs) -> str:
        return self.text.format(**kwargs)


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[MessageType, MessageTemplate] = {

    MessageType.SUBSCRIBED: MessageTemplate(
        message_type=MessageType.SUBSCRIBED,
        text="✅ Subscribed to {store_name}",
    ),

    MessageType.UNSUBSCRIBED: MessageTemplate(
        message_type=MessageType.UNSUBSCRIBED,
        text="❌ Unsubscribed from {store_name}",
    ),

    MessageType.STORE_NOT_FOUND: MessageTemplate(
        message_type=MessageType.STORE_NOT_FOUND,
        text="❌ Store '{slug}' not found",
    ),

    MessageType.HELP: MessageTemplate(
        message_type=MessageType.HELP,
        text="""Get notified when your favourite stores drop something new.

/subscribe <store-slug> - follow a store
/unsubscribe <store-slug> - stop following a store
/help - show this message""",
    ),

    MessageType.SUBSCRIBE_USAGE: MessageTemplate(
        message_type=MessageType.SUBSCRIBE_USAGE,
        text="⚠️ Usage:\n/start subscribe_<store-slug>\nOR\n/subscribe <store-slug>",
    ),

    MessageType.UNSUBSCRIBE_USAGE: MessageTemplate(
        message_type=MessageType.UNSUBSCRIBE_USAGE,
        text="⚠️ Usage:\n/unsubscribe <store-slug>",
    ),
}


def render_message(message_type: MessageType, **context) -> str:
    """
    Render a chat reply.

    Raises:
        ValueError: If no template exists for the message type
    """
    template = TEMPLATES.get(message_type)
    if not template:
        raise ValueError(f"No template found for message type: {message_type}")
    return template.render(**context)


# =============================================================================
# Drop Announcements
# =============================================================================

# Captions are sent with Telegram's HTML parse mode
CAPTION_PARSE_MODE = "HTML"

BUY_LABEL = "Buy now"


def render_drop_caption(drop: Drop, max_length: int = CAPTION_MAX_LENGTH) -> str:
    """
    Build the photo caption announcing a drop.

    Layout (Telegram HTML):
        🔥 <b><title></b>
        <price>
        <description>
        <a href="<product url>">Buy now</a>

    Store-supplied text is HTML-escaped, so titles may contain any character.
    Telegram applies the caption limit to the visible text, after markup is
    parsed. The description is truncated (with an ellipsis) when the visible
    caption would exceed `max_length`; title, price and link are always kept.
    """
    visible_head = f"🔥 {drop.title}\n{drop.price}\n"
    visible_tail = f"\n{BUY_LABEL}"
    description = drop.description

    room = max_length - len(visible_head) - len(visible_tail)
    if len(description) > room:
        description = description[:max(room - 1, 0)] + "…"

    return (
        f"🔥 <b>{html.escape(drop.title, quote=False)}</b>\n"
        f"{html.escape(drop.price, quote=False)}\n"
        f"{html.escape(description, quote=False)}\n"
        f'<a href="{html.escape(drop.product_url)}">{BUY_LABEL}</a>'
    )


def deep_link_url(bot_username: Optional[str], slug: str) -> str:
    """
    Build the Telegram deep link that subscribes the opener to a store.

    Raises:
        ValueError: If no bot username is configured
    """
    if not bot_username:
        raise ValueError("Bot username is not configured")
    return f"https://t.me/{bot_username.lstrip('@')}?start={DEEP_LINK_PREFIX}{slug}"
