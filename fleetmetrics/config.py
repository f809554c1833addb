import os
import logging
from typing import List
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _float_list(raw: str) -> List[float]:
    return [float(part) for part in raw.split(",") if part.strip()]


# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///fleet_metrics.db")

# Segmentation thresholds
MAX_GAP_SECONDS = float(os.getenv("MAX_GAP_SECONDS", "1800"))
DEFAULT_EXPECTED_DAILY_WORK_HOURS = float(os.getenv("DEFAULT_EXPECTED_DAILY_WORK_HOURS", "8"))
MIN_PRESENCE_PERCENT = float(os.getenv("MIN_PRESENCE_PERCENT", "0"))

# Fleet run configuration
FLEET_CHUNK_SIZE = int(os.getenv("FLEET_CHUNK_SIZE", "100"))
FLEET_MAX_WORKERS = int(os.getenv("FLEET_MAX_WORKERS", "4"))
UNIT_MAX_ATTEMPTS = int(os.getenv("UNIT_MAX_ATTEMPTS", "3"))
UNIT_BACKOFF_SECONDS = _float_list(os.getenv("UNIT_BACKOFF_SECONDS", "30,60,120"))
UNIT_TIMEOUT_SECONDS = float(os.getenv("UNIT_TIMEOUT_SECONDS", "300"))
FLEET_RUNS_RETAINED = int(os.getenv("FLEET_RUNS_RETAINED", "20"))

# Per-vehicle lock configuration
LOCK_BACKEND = os.getenv("LOCK_BACKEND", "memory").lower()
LOCK_EXPIRE_SECONDS = float(os.getenv("LOCK_EXPIRE_SECONDS", "300"))
LOCK_RELEASE_AFTER_SECONDS = float(os.getenv("LOCK_RELEASE_AFTER_SECONDS", "60"))
LOCK_WAIT_SECONDS = float(os.getenv("LOCK_WAIT_SECONDS", "10"))
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Streaming configuration
STREAM_BATCH_SIZE = int(os.getenv("STREAM_BATCH_SIZE", "1000"))
CANCEL_CHECK_EVERY = int(os.getenv("CANCEL_CHECK_EVERY", "500"))

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "")

# Development configuration
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
ENABLE_CORS = os.getenv("ENABLE_CORS", "true").lower() == "true"


class Config:
    """Configuration values handed to the engine when the app is composed."""

    def __init__(self):
        self.database_url = DATABASE_URL

        # Segmentation
        self.max_gap_seconds = MAX_GAP_SECONDS
        self.default_expected_daily_work_hours = DEFAULT_EXPECTED_DAILY_WORK_HOURS
        self.min_presence_percent = MIN_PRESENCE_PERCENT

        # Fleet runs
        self.fleet_chunk_size = FLEET_CHUNK_SIZE
        self.fleet_max_workers = FLEET_MAX_WORKERS
        self.unit_max_attempts = UNIT_MAX_ATTEMPTS
        self.unit_backoff_seconds = list(UNIT_BACKOFF_SECONDS)
        self.unit_timeout_seconds = UNIT_TIMEOUT_SECONDS
        self.fleet_runs_retained = FLEET_RUNS_RETAINED

        # Locks
        self.lock_backend = LOCK_BACKEND
        self.lock_expire_seconds = LOCK_EXPIRE_SECONDS
        self.lock_release_after_seconds = LOCK_RELEASE_AFTER_SECONDS
        self.lock_wait_seconds = LOCK_WAIT_SECONDS
        self.redis_url = REDIS_URL

        # Streaming
        self.stream_batch_size = STREAM_BATCH_SIZE
        self.cancel_check_every = CANCEL_CHECK_EVERY

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        # Development
        self.debug = DEBUG
        self.enable_cors = ENABLE_CORS

    def get_segmentation_config(self) -> dict:
        """Get segmentation configuration as dictionary."""
        return {
            "max_gap_seconds": self.max_gap_seconds,
            "default_expected_daily_work_hours": self.default_expected_daily_work_hours,
            "min_presence_percent": self.min_presence_percent
        }

    def get_fleet_config(self) -> dict:
        """Get fleet run configuration as dictionary."""
        return {
            "chunk_size": self.fleet_chunk_size,
            "max_workers": self.fleet_max_workers,
            "max_attempts": self.unit_max_attempts,
            "backoff_seconds": list(self.unit_backoff_seconds),
            "timeout_seconds": self.unit_timeout_seconds,
            "runs_retained": self.fleet_runs_retained
        }

    def get_lock_config(self) -> dict:
        """Get per-vehicle lock configuration as dictionary."""
        return {
            "backend": self.lock_backend,
            "expire_seconds": self.lock_expire_seconds,
            "release_after_seconds": self.lock_release_after_seconds,
            "wait_seconds": self.lock_wait_seconds
        }


# Global configuration instance
config = Config()


def setup_logging():
    """Setup logging configuration."""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format=config.log_format,
        handlers=handlers
    )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)

    return logging.getLogger(__name__)
