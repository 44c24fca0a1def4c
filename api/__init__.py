"""
HTTP surface of the drop notifier.

A single FastAPI application factory exposing:
- The Telegram webhook
- Drop publication
- Store deep links
"""

from api.main import create_app

__all__ = ["create_app"]
