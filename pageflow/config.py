"""
Configuration for PageFlow

Settings are read from the environment (and a local .env file, if present).

Environment Variables:
    REDIS_URL: Redis connection string for the job queue and rate limiter
    DATABASE_URL: PostgreSQL connection string for the workflow store
    SUPABASE_URL / SUPABASE_KEY: Supabase Storage credentials for page files
    MISTRAL_API_KEY: Extraction service key (mock extraction when unset)

Every backend falls back to a local implementation when its variable is unset.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


# =============================================================================
# DATABASE
# =============================================================================

@dataclass
class DatabaseConfig:
    """Database configuration."""
    database_url: str = ""
    min_connections: int = 2
    max_connections: int = 10
    command_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Load configuration from environment variables."""
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            min_connections=int(os.getenv("DB_MIN_CONNECTIONS", "2")),
            max_connections=int(os.getenv("DB_MAX_CONNECTIONS", "10")),
            command_timeout_seconds=float(os.getenv("DB_COMMAND_TIMEOUT", "30")),
        )

    @property
    def is_configured(self) -> bool:
        """Check if database is configured."""
        return bool(self.database_url)


# =============================================================================
# PIPELINE SETTINGS
# =============================================================================

class PipelineSettings(BaseModel):
    """Runtime settings for workers and backends."""
    redis_url: Optional[str] = None
    redis_socket_timeout_seconds: float = Field(5.0, gt=0)

    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    storage_bucket: str = "documents"
    storage_dir: str = "./data/files"

    mistral_api_key: Optional[str] = None
    extraction_model: str = "mistral-large-latest"
    vision_model: str = "pixtral-large-latest"

    split_concurrency: int = Field(2, ge=1, le=32)
    page_concurrency: int = Field(3, ge=1, le=64)
    split_max_attempts: int = Field(3, ge=1, le=20)
    page_max_attempts: int = Field(5, ge=1, le=20)
    backoff_base_seconds: float = Field(5.0, ge=0)
    backoff_max_seconds: float = Field(600.0, gt=0)

    job_lease_seconds: float = Field(300.0, gt=0)
    stalled_check_interval_seconds: float = Field(30.0, gt=0)
    poll_interval_seconds: float = Field(0.5, gt=0)

    fetch_timeout_seconds: float = Field(30.0, gt=0)
    store_timeout_seconds: float = Field(60.0, gt=0)
    extraction_timeout_seconds: float = Field(120.0, gt=0)
    job_timeout_seconds: float = Field(600.0, gt=0)

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """Load settings from environment variables."""
        env = os.getenv
        return cls(
            redis_url=env("REDIS_URL") or None,
            redis_socket_timeout_seconds=float(env("REDIS_SOCKET_TIMEOUT", "5")),
            supabase_url=env("SUPABASE_URL") or None,
            supabase_key=env("SUPABASE_KEY") or None,
            storage_bucket=env("STORAGE_BUCKET", "documents"),
            storage_dir=env("STORAGE_DIR", "./data/files"),
            mistral_api_key=env("MISTRAL_API_KEY") or None,
            extraction_model=env("EXTRACTION_MODEL", "mistral-large-latest"),
            vision_model=env("VISION_MODEL", "pixtral-large-latest"),
            split_concurrency=int(env("SPLIT_CONCURRENCY", "2")),
            page_concurrency=int(env("PAGE_CONCURRENCY", "3")),
            split_max_attempts=int(env("SPLIT_MAX_ATTEMPTS", "3")),
            page_max_attempts=int(env("PAGE_MAX_ATTEMPTS", "5")),
            backoff_base_seconds=float(env("BACKOFF_BASE_SECONDS", "5")),
            backoff_max_seconds=float(env("BACKOFF_MAX_SECONDS", "600")),
            job_lease_seconds=float(env("JOB_LEASE_SECONDS", "300")),
            stalled_check_interval_seconds=float(env("STALLED_CHECK_INTERVAL_SECONDS", "30")),
            poll_interval_seconds=float(env("POLL_INTERVAL_SECONDS", "0.5")),
            fetch_timeout_seconds=float(env("FETCH_TIMEOUT_SECONDS", "30")),
            store_timeout_seconds=float(env("STORE_TIMEOUT_SECONDS", "60")),
            extraction_timeout_seconds=float(env("EXTRACTION_TIMEOUT_SECONDS", "120")),
            job_timeout_seconds=float(env("JOB_TIMEOUT_SECONDS", "600")),
        )

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)
