"""Application settings.

All configuration is read from the environment (or a local ``.env`` file) and
exposed through the ``settings`` singleton.
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the obituary archive backend.

    Attributes:
        ENVIRONMENT: Deployment environment (local, test, dev, prd)
        LOCAL_DEVELOPMENT: Enables developer conveniences (verbose logging)
        LOG_LEVEL: Root log level
        POSTGRES_*: Connection parameters for the catalog database
        SQLALCHEMY_ASYNC_DATABASE_URI: Full async database URI (built from POSTGRES_* if unset)
        STORAGE_BACKEND: Object store implementation ("filesystem" or "s3")
        STORAGE_PATH: Root directory for the filesystem backend
        S3_*: Bucket and credentials for S3-compatible stores (AWS, MinIO, R2)
        STORAGE_TIMEOUT_SECONDS: Upper bound for every single object store call
        REFERENCE_LENGTH: Width of an obituary reference (prefix of an image key)
        INGEST_MAX_ATTEMPTS: Attempts for an object store write during ingestion
        INGEST_BACKOFF_MULTIPLIER: Exponential backoff multiplier (0 = immediate retries)
        INGEST_BACKOFF_MAX: Maximum wait between ingestion attempts in seconds
        ARCHIVE_FETCH_CONCURRENCY: Concurrent image reads per archive request
        RECONCILE_ON_STARTUP: Run a full reconciliation when the API starts
        RECONCILE_DISTRIBUTED_LOCK: Guard reconciliation with a Redis lock across instances
        RECONCILE_LOCK_TTL_SECONDS: Expiry of the Redis reconciliation lock
        DOCUMENT_SERVICE_URL: Base URL of the report service that renders obituary PDFs
        DOCUMENT_TIMEOUT_SECONDS: Timeout for a report request
        AUTH_ENABLED: Require an API key on every request
        API_KEY: Key accepted when AUTH_ENABLED is set
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    ENVIRONMENT: Literal["local", "test", "dev", "prd"] = "local"
    LOCAL_DEVELOPMENT: bool = False
    LOG_LEVEL: str = "INFO"

    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "obitarchive"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "obitarchive"
    SQLALCHEMY_ASYNC_DATABASE_URI: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10

    STORAGE_BACKEND: Literal["filesystem", "s3"] = "filesystem"
    STORAGE_PATH: Path = Path("./local_storage")
    S3_BUCKET_NAME: str = "obituary-images"
    S3_ENDPOINT_URL: Optional[str] = None
    S3_ACCESS_KEY_ID: Optional[str] = None
    S3_SECRET_ACCESS_KEY: Optional[str] = None
    S3_REGION: str = "us-east-1"
    S3_USE_SSL: bool = True
    S3_LIST_PAGE_SIZE: int = 1000
    STORAGE_TIMEOUT_SECONDS: float = 30.0
    PRESIGNED_URL_TTL_SECONDS: int = 24 * 60 * 60

    REFERENCE_LENGTH: int = 8
    INGEST_MAX_ATTEMPTS: int = 3
    INGEST_BACKOFF_MULTIPLIER: float = 0.5
    INGEST_BACKOFF_MAX: float = 5.0
    ARCHIVE_FETCH_CONCURRENCY: int = 4

    RECONCILE_ON_STARTUP: bool = True
    RECONCILE_DISTRIBUTED_LOCK: bool = False
    RECONCILE_LOCK_TTL_SECONDS: int = 15 * 60

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    DOCUMENT_SERVICE_URL: str = "http://localhost:3000/api"
    DOCUMENT_TIMEOUT_SECONDS: float = 30.0

    AUTH_ENABLED: bool = False
    API_KEY: Optional[str] = None

    @field_validator("INGEST_MAX_ATTEMPTS", "ARCHIVE_FETCH_CONCURRENCY", "REFERENCE_LENGTH")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def _assemble_db_uri(self) -> "Settings":
        """Build the async database URI from the POSTGRES_* fields when not given."""
        if not self.SQLALCHEMY_ASYNC_DATABASE_URI:
            self.SQLALCHEMY_ASYNC_DATABASE_URI = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
        if self.AUTH_ENABLED and not self.API_KEY:
            raise ValueError("API_KEY must be set when AUTH_ENABLED is true")
        return self


settings = Settings()
