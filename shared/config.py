"""
Runtime configuration.

Values come from environment variables prefixed with `DROPS_` (or a `.env`
file in the working directory). The bot token is also accepted under the
conventional `TELEGRAM_BOT_TOKEN` name.
"""

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DROPS_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # Telegram Bot API
    telegram_bot_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DROPS_TELEGRAM_BOT_TOKEN", "TELEGRAM_BOT_TOKEN"),
    )
    telegram_api_base: str = "https://api.telegram.org"
    telegram_bot_username: Optional[str] = None
    webhook_secret: Optional[str] = None
    http_timeout_seconds: float = Field(default=10.0, gt=0)

    # Fan-out
    fanout_max_concurrency: int = Field(default=10, ge=1)
    fanout_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    prune_invalid_recipients: bool = False

    data_dir: Path = DEFAULT_DATA_DIR
    log_level: str = "INFO"
