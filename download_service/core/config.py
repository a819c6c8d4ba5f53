# download_service/core/config.py
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import List, Literal, Optional
from download_service.core.exceptions import ConfigurationError


FILE_ID_MIN = 10_000
FILE_ID_MAX = 100_000_000


class Settings(BaseSettings):
    # runtime
    ENVIRONMENT: Literal["development", "production", "test"] = "development"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    CORS_ORIGINS: str = "*"

    # content store (empty bucket name switches to mock mode)
    S3_BUCKET_NAME: str = ""
    S3_ENDPOINT: Optional[str] = None
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY_ID: Optional[str] = None
    S3_SECRET_ACCESS_KEY: Optional[str] = None
    S3_FORCE_PATH_STYLE: bool = False
    STORAGE_TIMEOUT_SECONDS: float = 5.0
    DOWNLOAD_BASE_URL: str = "https://storage.example.com"

    # simulated download latency
    DOWNLOAD_DELAY_MIN_MS: int = 10_000
    DOWNLOAD_DELAY_MAX_MS: int = 200_000
    DOWNLOAD_DELAY_ENABLED: bool = True

    # request guards
    REQUEST_TIMEOUT_MS: int = 30_000
    RATE_LIMIT_WINDOW_MS: int = 60_000
    RATE_LIMIT_MAX_REQUESTS: int = 100

    # observability; both exporters stay off while unset
    SENTRY_DSN: Optional[str] = None
    OTEL_EXPORTER_OTLP_ENDPOINT: Optional[str] = None

    # client-visible error log
    ERROR_LOG_LIMIT: int = 50

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("DOWNLOAD_DELAY_MIN_MS", "DOWNLOAD_DELAY_MAX_MS")
    @classmethod
    def validate_delay(cls, v: int) -> int:
        if v < 0:
            raise ConfigurationError("Download delay bounds must be non-negative")
        return v

    @field_validator("REQUEST_TIMEOUT_MS", "RATE_LIMIT_WINDOW_MS")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v < 1000:
            raise ConfigurationError("Request timeout and rate-limit window must be at least 1000 ms")
        return v

    @field_validator("RATE_LIMIT_MAX_REQUESTS")
    @classmethod
    def validate_rate_limit(cls, v: int) -> int:
        if v < 1:
            raise ConfigurationError("RATE_LIMIT_MAX_REQUESTS must be at least 1")
        return v

    @field_validator("S3_ENDPOINT", "SENTRY_DSN", "OTEL_EXPORTER_OTLP_ENDPOINT", mode="before")
    @classmethod
    def empty_url_is_unset(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @model_validator(mode="after")
    def validate_delay_range(self) -> "Settings":
        if self.DOWNLOAD_DELAY_MIN_MS > self.DOWNLOAD_DELAY_MAX_MS:
            raise ConfigurationError(
                "DOWNLOAD_DELAY_MIN_MS must not exceed DOWNLOAD_DELAY_MAX_MS",
                {
                    "min": self.DOWNLOAD_DELAY_MIN_MS,
                    "max": self.DOWNLOAD_DELAY_MAX_MS,
                },
            )
        return self

    @property
    def mock_storage(self) -> bool:
        return not self.S3_BUCKET_NAME

    @property
    def cors_origins(self) -> List[str]:
        if self.CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def rate_limit(self) -> str:
        """Limit string in the ``limits`` notation, e.g. ``100 per 60 seconds``."""
        return f"{self.RATE_LIMIT_MAX_REQUESTS} per {self.RATE_LIMIT_WINDOW_MS // 1000} seconds"

    def validate_runtime_dependencies(self) -> None:
        """Validate that the configured content store is reachable in principle."""
        errors = []

        if bool(self.S3_ACCESS_KEY_ID) != bool(self.S3_SECRET_ACCESS_KEY):
            errors.append("S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY must be set together")

        if self.STORAGE_TIMEOUT_SECONDS <= 0:
            errors.append("STORAGE_TIMEOUT_SECONDS must be positive")

        if errors:
            raise ConfigurationError(
                f"Configuration validation failed: {', '.join(errors)}"
            )


class DashboardSettings(BaseSettings):
    """Settings for the polling dashboard client."""

    API_URL: str = "http://localhost:3000"
    REQUEST_TIMEOUT_SECONDS: float = 300.0
    POLL_TIMEOUT_SECONDS: float = 10.0
    POLL_INTERVAL_MS: int = 2000
    PROGRESS_INTERVAL_MS: int = 100
    PROMOTE_AFTER_MS: int = 100
    # give up on a job still unresolved after this long; 0 disables
    TRACK_TIMEOUT_MS: int = 0

    # mirrors the server's delay window; only used to estimate progress
    EXPECTED_DELAY_MIN_MS: int = 10_000
    EXPECTED_DELAY_MAX_MS: int = 200_000

    ERROR_LOG_LIMIT: int = 50
    SENTRY_DSN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="DASHBOARD_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def average_delay_ms(self) -> float:
        return (self.EXPECTED_DELAY_MIN_MS + self.EXPECTED_DELAY_MAX_MS) / 2


@lru_cache()
def get_settings() -> Settings:
    """
    Cached factory. FastAPI resolves get_settings() through Depends,
    lru_cache keeps a single Settings instance per process.
    """
    return Settings()


@lru_cache()
def get_dashboard_settings() -> DashboardSettings:
    return DashboardSettings()
