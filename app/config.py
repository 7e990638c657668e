from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres settings
    DATABASE_URL: str = "postgresql://localhost:5432/ingestion"
    DB_APPLY_SCHEMA_ON_START: bool = False

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # JOB QUEUE SETTINGS
    # =================================================================
    JOB_MAX_ATTEMPTS: int = 5
    JOB_RETRY_BASE_SECONDS: float = 30.0
    JOB_RETRY_MAX_SECONDS: float = 3600.0  # 1 hour
    JOB_VISIBILITY_TIMEOUT_SECONDS: float = 600.0  # 10 minutes
    JOB_HANDLER_TIMEOUT_SECONDS: float = 300.0  # 5 minutes
    JOB_MAX_PAYLOAD_BYTES: int = 1024 * 1024

    # Worker settings
    WORKER_CONCURRENCY: int = 4
    WORKER_POLL_INTERVAL_SECONDS: float = 2.0
    WORKER_RECLAIM_INTERVAL_SECONDS: float = 60.0

    # Collaborators, as "module:attribute" import paths
    INGESTION_ADAPTERS: str = ""  # "gmail=pkg.gmail:GmailAdapter,calendar=pkg.cal:Adapter"
    EMBEDDER_PATH: str = ""
    INSIGHT_SCORER_PATH: str = ""

    # External adapter rate limiting (token bucket)
    SYNC_RATE_LIMIT_CAPACITY: int = 10
    SYNC_RATE_LIMIT_REFILL_PER_SECOND: float = 1.0

    # Normalization / identity resolution
    NORMALIZE_BATCH_LIMIT: int = 500
    IDENTITY_FUZZY_MATCH_THRESHOLD: float = 0.88
    IDENTITY_FUZZY_CANDIDATE_LIMIT: int = 50
    IDENTITY_DEFAULT_COUNTRY_CODE: str = "1"

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 2,
                    "max_size": 8,
                    "timeout": 15.0,
                }
            )

        # Every worker holds at most one connection at a time, plus one for the reclaim sweep
        config["max_size"] = max(config["max_size"], self.WORKER_CONCURRENCY + 1)
        return config

    def get_retry_policy(self) -> dict:
        """Backoff settings handed to the job queue."""
        return {
            "max_attempts": self.JOB_MAX_ATTEMPTS,
            "base_seconds": self.JOB_RETRY_BASE_SECONDS,
            "max_seconds": self.JOB_RETRY_MAX_SECONDS,
        }


settings = Settings()

# =================================================================
# QUICK CONFIGURATION REFERENCE
# =================================================================
"""
Retry schedule with the defaults (attempts counted from 1):

    attempt 1 fails -> retry in 30s
    attempt 2 fails -> retry in 60s
    attempt 3 fails -> retry in 120s
    attempt 4 fails -> retry in 240s
    attempt 5 fails -> job marked failed

Raise WORKER_CONCURRENCY together with DB_POOL_MAX_SIZE; a worker never
holds more than one pooled connection.
"""
