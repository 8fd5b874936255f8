"""Configuration for Megillah Live sessions."""

from pathlib import Path
from typing import Any

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "megillah-live"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"


class LiveSyncConfig(BaseSettings):
    """Configuration for the live-sync session core."""

    model_config = SettingsConfigDict(
        env_prefix="MEGILLAH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Record store and channel transport
    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis URL used for session records and channels",
    )
    channel_prefix: str = Field(
        default="session:",
        description="Prefix prepended to the session code to name its channel",
    )
    record_key_prefix: str = Field(
        default="megillah:session:",
        description="Prefix prepended to the session code to name its record",
    )
    record_encryption_key: SecretStr | None = Field(
        default=None,
        description="Secret used to encrypt stored record values (unset keeps them plain)",
    )

    # Timing (milliseconds)
    throttle_interval_ms: int = Field(
        default=200,
        ge=0,
        description="Minimum spacing between outgoing scroll broadcasts",
    )
    word_throttle_interval_ms: int = Field(
        default=80,
        ge=0,
        description="Minimum spacing between dragged word highlights",
    )
    suppression_window_ms: int = Field(
        default=3000,
        ge=0,
        description="How long a highlight suppresses scroll-driven viewport moves",
    )

    # Viewport
    scroll_margin_px: float = Field(
        default=16,
        ge=0,
        description="Gap kept between the sticky header and the target verse",
    )

    # Local durable storage (pending session)
    storage_path: Path = Field(
        default=DEFAULT_CONFIG_DIR / "storage.json",
        description="JSON file backing local key-value storage",
    )

    share_base_url: str = Field(
        default="https://megillah.app",
        description="Base URL used for share links",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )


def load_config(config_file: str | Path | None = None) -> LiveSyncConfig:
    """Load configuration from a TOML file, with environment variable overrides.

    Priority (highest to lowest):
    1. Environment variables (MEGILLAH_*)
    2. Provided config file
    3. Default config file (~/.config/megillah-live/config.toml)
    4. Default values

    Args:
        config_file: Optional path to a config file

    Returns:
        Loaded configuration
    """
    import tomllib

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_PATH

    file_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
            file_config = data.get("megillah", {})

    # Init kwargs beat the environment in BaseSettings, so drop file keys
    # the environment already sets.
    env_settings = LiveSyncConfig()
    overridden = env_settings.model_fields_set
    file_config = {k: v for k, v in file_config.items() if k not in overridden}

    return LiveSyncConfig(**file_config)
