"""Configuration module for loading environment variables."""

import logging
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "y", "on"}


def get_env_var(
    name: str, default: str | None = None, required: bool = True
) -> str | None:
    """Get environment variable with optional default value."""
    value = os.getenv(name, default)
    if required and value is None:
        logger.warning("Missing required environment variable: %s", name)
    return value


def get_env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def require_env_value(name: str, value: str | None) -> str:
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


# PostgreSQL configuration (Heroku-style DATABASE_URL)
DATABASE_URL: str | None = get_env_var("DATABASE_URL", required=False)

# Echo every SQL statement through the sqlalchemy.engine logger
DB_ECHO: bool = get_env_bool("DB_ECHO")

# Connection pool size for the async engine
DB_POOL_SIZE: int = get_env_int("DB_POOL_SIZE", 5)

# Discord's message length ceiling
MESSAGE_MAX_LENGTH: int = 2000
