"""Application configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings loaded from environment variables and ``.env``.

    Strategy and terminal parameters live in the YAML trading config.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database (tick feed)
    database_url: str = "postgresql://localhost/quik"
    database_echo: bool = False

    # Trading config file
    trading_config_path: str = "config.yaml"

    # Telegram (overrides tg_token from the YAML file when set)
    telegram_token: str = ""

    # Status/control server
    host: str = "127.0.0.1"
    port: int = 8000

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
