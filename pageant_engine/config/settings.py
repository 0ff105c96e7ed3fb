"""
Engine Settings

Centralized configuration for the certification and tabulation engine.
All values are loaded from environment variables (a local .env file is
honoured through python-dotenv).
"""
import os
import logging
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"Invalid integer for {key}={value!r}, using default {default}"
        )
        return default


def get_str_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get a string value from environment variable, treating blanks as unset."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


class Settings:
    """
    Engine settings.

    To add a new setting:
    1. Add it here as a class property
    2. Load it from an environment variable
    3. Read it through the ``settings`` singleton
    """

    # Persistence
    DATABASE_URL: str = get_str_env('DATABASE_URL', 'sqlite+aiosqlite:///./pageant.db')
    SQL_ECHO: bool = get_bool_env('SQL_ECHO', False)
    SQLITE_BUSY_TIMEOUT_SECONDS: int = get_int_env('SQLITE_BUSY_TIMEOUT_SECONDS', 30)

    # Logging
    LOG_LEVEL: str = get_str_env('LOG_LEVEL', 'INFO')

    # Tabulation
    DEFAULT_AGGREGATION_RULE: str = get_str_env('DEFAULT_AGGREGATION_RULE', 'mean')
    SCORE_DECIMAL_PLACES: int = get_int_env('SCORE_DECIMAL_PLACES', 1)

    @classmethod
    def as_dict(cls) -> dict:
        """Get all settings as a dictionary (for diagnostics)."""
        return {
            key: value
            for key, value in cls.__dict__.items()
            if key.isupper()
        }


# Singleton instance for easy importing
settings = Settings()
