"""
Configuration for docmodel.

Uses pydantic-settings for environment variable loading
(prefix DOCMODEL_, e.g. DOCMODEL_MAX_CONFLICT_RETRIES=32).
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal, Optional

import json_log_formatter
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """docmodel configuration loaded from environment."""

    # Optimistic concurrency
    max_conflict_retries: Optional[int] = Field(
        default=16,
        ge=0,
        description="Consecutive conflicts tolerated per operation (None = unbounded)",
    )

    # Replication defaults
    replication_live: bool = Field(default=True, description="Keep replications running")
    replication_retry: bool = Field(default=True, description="Retry failed replications")
    retry_backoff_initial: float = Field(default=0.5, gt=0, description="First retry delay seconds")
    retry_backoff_max: float = Field(default=60.0, gt=0, description="Maximum retry delay seconds")

    # Change feeds
    changes_since: str = Field(default="now", description="Default since for set_changes()")

    # Remote stores
    http_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout seconds")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: Literal["text", "json"] = Field(default="text", description="text or json")

    model_config = {"env_prefix": "DOCMODEL_"}

    @property
    def replication_defaults(self) -> dict:
        """Options applied to every replication unless overridden."""
        return {
            "live": self.replication_live,
            "retry": self.replication_retry,
            "backoff_initial": self.retry_backoff_initial,
            "backoff_max": self.retry_backoff_max,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings (read from the environment once)."""
    return Settings()


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging based on settings.

    Args:
        settings: Settings to use (defaults to get_settings())
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
