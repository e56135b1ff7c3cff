"""Configuration management from environment variables."""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
STATE_DB = Path(os.getenv("STATE_DB", str(DATA_DIR / "state.db")))

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


class Config:
    """Application configuration."""

    # Report engine
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost")
    TOKEN_AUTH: str | None = os.getenv("TOKEN_AUTH")
    TIMEOUT: int = int(os.getenv("TIMEOUT", "300"))

    # Dispatch
    CONCURRENCY: int = int(os.getenv("CONCURRENCY", "3"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))

    # Freshness rules
    TODAY_ARCHIVE_TTL: int = int(os.getenv("TODAY_ARCHIVE_TTL", "900"))
    SEGMENT_RECENCY_HOURS: int = int(os.getenv("SEGMENT_RECENCY_HOURS", "24"))
    NO_VISITS_MAX_AGE_DAYS: int = int(os.getenv("NO_VISITS_MAX_AGE_DAYS", "365"))

    # Run control
    MAX_CONSECUTIVE_ERRORS: Optional[int] = _optional_int("MAX_CONSECUTIVE_ERRORS")
    STOP_AFTER_MINUTES: Optional[int] = _optional_int("STOP_AFTER_MINUTES")
    STALE_CLAIM_MINUTES: int = int(os.getenv("STALE_CLAIM_MINUTES", "60"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        errors = []
        if not cls.BASE_URL:
            errors.append("BASE_URL is required")
        if cls.CONCURRENCY < 1:
            errors.append("CONCURRENCY must be at least 1")
        if cls.TODAY_ARCHIVE_TTL < 0:
            errors.append("TODAY_ARCHIVE_TTL must not be negative")
        if cls.MAX_RETRIES < 1:
            errors.append("MAX_RETRIES must be at least 1")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
