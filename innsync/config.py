"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import os
from dataclasses import dataclass


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        LOG_LEVEL: Logging level.
        REDIS_URL: Redis connection URL for the review queue.
        REVIEW_QUEUE_BACKEND: "memory" or "redis".
        WEBHOOK_WORKER_PARTITIONS: Number of ordered delivery sub-queues (and workers).
        WEBHOOK_USER_AGENT: User-Agent header sent with webhook deliveries.
        AMENDMENT_SAVE_MAX_ATTEMPTS: Optimistic-concurrency retries for booking saves.
        CHANNEL_CONFIRMATION_MAX_ATTEMPTS: Attempts per channel confirmation.
        AMENDMENT_SUPERSEDE_ON_CONFLICT: Register the supersede strategy for field conflicts.
    """

    LOG_LEVEL: str = "INFO"

    # Review queue
    REDIS_URL: str = "redis://localhost:6379"
    REVIEW_QUEUE_BACKEND: str = "memory"

    # Webhook delivery
    WEBHOOK_WORKER_PARTITIONS: int = 8
    WEBHOOK_USER_AGENT: str = "Innsync-Webhooks/1.0"

    # Amendment pipeline
    AMENDMENT_SAVE_MAX_ATTEMPTS: int = 3
    CHANNEL_CONFIRMATION_MAX_ATTEMPTS: int = 3
    AMENDMENT_SUPERSEDE_ON_CONFLICT: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
            REDIS_URL=os.getenv("REDIS_URL", "redis://localhost:6379"),
            REVIEW_QUEUE_BACKEND=os.getenv("REVIEW_QUEUE_BACKEND", "memory").lower(),
            WEBHOOK_WORKER_PARTITIONS=max(1, _get_int_env("WEBHOOK_WORKER_PARTITIONS", 8)),
            WEBHOOK_USER_AGENT=os.getenv("WEBHOOK_USER_AGENT", "Innsync-Webhooks/1.0"),
            AMENDMENT_SAVE_MAX_ATTEMPTS=max(1, _get_int_env("AMENDMENT_SAVE_MAX_ATTEMPTS", 3)),
            CHANNEL_CONFIRMATION_MAX_ATTEMPTS=max(
                1, _get_int_env("CHANNEL_CONFIRMATION_MAX_ATTEMPTS", 3)
            ),
            AMENDMENT_SUPERSEDE_ON_CONFLICT=_get_bool_env(
                "AMENDMENT_SUPERSEDE_ON_CONFLICT", default=False
            ),
        )


# Global settings instance
settings = Settings.from_env()
