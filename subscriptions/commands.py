"""
Chat command parser.

Turns an inbound Telegram webhook update into a parsed intent. Everything in
this module is pure: no I/O, no clock, no randomness, so it can be tested
exhaustively without a network.

Recognised commands (case-sensitive, exact first token):
    /start subscribe_<slug>   -> DeepLinkSubscribe(slug)
    /subscribe <slug>         -> Subscribe(slug)
    /unsubscribe <slug>       -> Unsubscribe(slug)
    /help                     -> Help()

Tokens are separated by single spaces. A recognised command missing its
argument yields UsageError(command).
Anything else, including an empty or missing text, yields NoOp().
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from shared.errors import ParseError
from shared.templates import DEEP_LINK_PREFIX


START_COMMAND = "/start"
SUBSCRIBE_COMMAND = "/subscribe"
UNSUBSCRIBE_COMMAND = "/unsubscribe"
HELP_COMMAND = "/help"


class CommandKind(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


# =============================================================================
# Intents
# =============================================================================

@dataclass(frozen=True)
class DeepLinkSubscribe:
    slug: str
    kind = "deep_link_subscribe"


@dataclass(frozen=True)
class Subscribe:
    slug: str
    kind = "subscribe"


@dataclass(frozen=True)
class Unsubscribe:
    slug: str
    kind = "unsubscribe"


@dataclass(frozen=True)
class Help:
    kind = "help"


@dataclass(frozen=True)
class UsageError:
    """A recognised command sent without its required argument."""
    command: CommandKind
    kind = "usage_error"


@dataclass(frozen=True)
class NoOp:
    kind = "noop"


Intent = Union[DeepLinkSubscribe, Subscribe, Unsubscribe, Help, UsageError, NoOp]


@dataclass(frozen=True)
class InboundMessage:
    """The parts of a webhook update the core cares about."""
    sender_id: str
    sender_name: Optional[str]
    text: Optional[str]


@dataclass(frozen=True)
class ParsedWebhook:
    sender: InboundMessage
    intent: Intent


# =============================================================================
# Parsing
# =============================================================================

def parse_command(text: Optional[str]) -> Intent:
    """Parse a message body into an intent."""
    if not text:
        return NoOp()

    tokens = text.split(" ")
    command, args = tokens[0], tokens[1:]
    argument = args[0] if args and args[0] else None

    if command == START_COMMAND:
        if argument and argument.startswith(DEEP_LINK_PREFIX):
            slug = argument[len(DEEP_LINK_PREFIX):]
            if not slug:
                return UsageError(CommandKind.SUBSCRIBE)
            return DeepLinkSubscribe(slug)
        return NoOp()

    if command == SUBSCRIBE_COMMAND:
        if argument is None:
            return UsageError(CommandKind.SUBSCRIBE)
        return Subscribe(argument)

    if command == UNSUBSCRIBE_COMMAND:
        if argument is None:
            return UsageError(CommandKind.UNSUBSCRIBE)
        return Unsubscribe(argument)

    if command == HELP_COMMAND:
        return Help()

    return NoOp()


def parse_update(raw: Union[bytes, str, dict[str, Any]]) -> InboundMessage:
    """
    Extract sender and text from a raw Telegram update.

    Raises:
        ParseError: If the payload is not a JSON object carrying a message
            with a chat id
    """
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ParseError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ParseError("Payload is not a JSON object")

    message = raw.get("message")
    if not isinstance(message, dict):
        raise ParseError("Update carries no message")

    chat = message.get("chat")
    if not isinstance(chat, dict) or chat.get("id") is None:
        raise ParseError("Message carries no chat id")

    text = message.get("text")
    return InboundMessage(
        sender_id=str(chat["id"]),
        sender_name=chat.get("username") or chat.get("first_name"),
        text=text if isinstance(text, str) else None,
    )


def parse_webhook(raw: Union[bytes, str, dict[str, Any]]) -> ParsedWebhook:
    """Parse a raw update into its sender and intent."""
    sender = parse_update(raw)
    return ParsedWebhook(sender=sender, intent=parse_command(sender.text))
