"""
Settings

Environment-driven configuration for the service.
All values are read from environment variables (a .env file is loaded first).
"""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on junk."""
    raw: Optional[str] = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    """
    Process settings.

    Operational policy values here are only the defaults used when no
    override is stored in the system_settings table.
    """

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./group_tiers.db")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # Auth edge
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 30)

    # Request throttling on apply endpoints
    RATE_LIMIT_ENABLED: bool = get_bool_env("RATE_LIMIT_ENABLED", True)
    APPLY_RATE_LIMIT: str = os.getenv("APPLY_RATE_LIMIT", "20/minute")

    ALLOWED_ORIGINS: str = os.getenv("ALLOWED_ORIGINS", "")

    # Phase finalization sweep
    PHASE_FINALIZER_ENABLED: bool = get_bool_env("PHASE_FINALIZER_ENABLED", True)
    PHASE_FINALIZER_INTERVAL_SECONDS: int = get_int_env("PHASE_FINALIZER_INTERVAL_SECONDS", 15)

    # Operational policy defaults
    DEFAULT_MIN_GROUP_MEMBERS: int = get_int_env("DEFAULT_MIN_GROUP_MEMBERS", 9)
    DEFAULT_MAX_GROUP_MEMBERS: int = get_int_env("DEFAULT_MAX_GROUP_MEMBERS", 11)
    DEFAULT_INCUBATION_DURATION_DAYS: int = get_int_env("DEFAULT_INCUBATION_DURATION_DAYS", 1)
    DEFAULT_REQUIRE_LEADERSHIP_FOR_ACTIVATION: bool = get_bool_env(
        "DEFAULT_REQUIRE_LEADERSHIP_FOR_ACTIVATION", True
    )
    DEFAULT_ENFORCE_CHANGE_DAY_FOR_LEAVE: bool = get_bool_env(
        "DEFAULT_ENFORCE_CHANGE_DAY_FOR_LEAVE", True
    )
    DEFAULT_ALLOW_STUDENT_GROUP_CREATION: bool = get_bool_env(
        "DEFAULT_ALLOW_STUDENT_GROUP_CREATION", False
    )

    # Phase creation defaults
    DEFAULT_TOTAL_WORKING_DAYS: int = 10
    DEFAULT_CHANGE_DAY_NUMBER: int = 5


settings = Settings()
