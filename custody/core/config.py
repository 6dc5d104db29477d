"""
Configuration management for the custody reconciliation engine.

This module handles loading and validating environment variables.
"""

import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _int_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    """Configuration class with environment variables."""

    # Database
    DB_PATH: str = os.getenv("DB_PATH", "data/custody.db")
    # Seconds a connection waits for the write lock held by another settlement
    DB_BUSY_TIMEOUT_SECONDS: float = _float_env("DB_BUSY_TIMEOUT_SECONDS", 5.0)

    # Custody defaults
    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "SAR").strip().upper()
    ADVANCE_REFERENCE_PREFIX: str = os.getenv("ADVANCE_REFERENCE_PREFIX", "ADV")
    ADVANCE_REFERENCE_WIDTH: int = _int_env("ADVANCE_REFERENCE_WIDTH", 3)

    # Treasury
    TREASURY_API_BASE_URL: Optional[str] = os.getenv("TREASURY_API_BASE_URL")
    TREASURY_API_KEY: Optional[str] = os.getenv("TREASURY_API_KEY")
    TREASURY_TIMEOUT_SECONDS: float = _float_env("TREASURY_TIMEOUT_SECONDS", 10.0)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """
        Validate that required configuration is present.

        Raises:
            ValueError: If required configuration is missing.
        """
        if not cls.DB_PATH:
            raise ValueError("DB_PATH must be configured")

        if not cls.DEFAULT_CURRENCY or len(cls.DEFAULT_CURRENCY) != 3:
            raise ValueError("DEFAULT_CURRENCY must be a 3-letter ISO code")

        if cls.TREASURY_TIMEOUT_SECONDS <= 0:
            raise ValueError("TREASURY_TIMEOUT_SECONDS must be positive")

        if not cls.TREASURY_API_BASE_URL:
            print("WARNING: TREASURY_API_BASE_URL not configured - using the local treasury tables")
