"""
Configuration for the message bridge.

All settings come from environment variables so the same image can run any
deployment. Per-session bridge behaviour (mirroring on/off, exclusions,
mirror credentials) lives in the bridge_policies table, not here.
"""

import logging
import os

logger = logging.getLogger(__name__)


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


class Config:
    """Runtime configuration loaded from the environment."""

    def __init__(self):
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        # Database (DatabaseManager reads the DB_* variables itself when
        # database_url is None)
        self.database_url = os.getenv("DATABASE_URL") or None

        # HTTP server
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = _get_int("PORT", 8080, minimum=1)
        self.api_key = os.getenv("API_KEY") or None

        # Retry sweep
        self.retry_schedule = os.getenv("RETRY_SCHEDULE", "* * * * *")
        self.retry_batch_size = _get_int("RETRY_BATCH_SIZE", 50, minimum=1)
        self.max_sync_retries = _get_int("MAX_SYNC_RETRIES", 5, minimum=0)
        self.retry_backoff_seconds = _get_int("RETRY_BACKOFF_SECONDS", 30, minimum=0)
        self.retry_backoff_max_seconds = _get_int("RETRY_BACKOFF_MAX_SECONDS", 3600, minimum=0)

        # Collaborators
        self.webhook_url = os.getenv("WEBHOOK_URL") or None
        self.webhook_timeout = _get_float("WEBHOOK_TIMEOUT", 10.0)
        self.webhook_max_attempts = _get_int("WEBHOOK_MAX_ATTEMPTS", 3, minimum=1)
        self.session_gateway_url = os.getenv("SESSION_GATEWAY_URL") or None
        self.mirror_timeout = _get_float("MIRROR_TIMEOUT", 30.0)

        self._validate_schedule()

    def _validate_schedule(self) -> None:
        parts = self.retry_schedule.split()
        if len(parts) != 5:
            raise ValueError(
                f"Invalid cron schedule format: {self.retry_schedule}. "
                "Expected format: 'minute hour day month day_of_week'"
            )

    def backoff_for(self, retry_count: int) -> int:
        """Seconds to wait before retry number ``retry_count`` (1-based)."""
        if retry_count <= 0:
            return 0
        delay = self.retry_backoff_seconds * (2 ** (retry_count - 1))
        return min(delay, self.retry_backoff_max_seconds)


def setup_logging(config: Config) -> None:
    """Configure root logging from the config's log level."""
    level = getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=level,
    )
    logging.getLogger().setLevel(level)

    # Third-party loggers are chatty at INFO
    for noisy in ("httpx", "httpcore", "apscheduler", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    logger.debug(f"Logging configured at {config.log_level}")
