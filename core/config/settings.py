# Complete settings with ALL required sections
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from enum import Enum
from typing import Optional


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class IGSettings(BaseModel):
    """Credentials and endpoint for the IG REST gateway"""
    username: str = ""
    password: str = ""
    api_key: str = ""
    account_id: str = ""
    base_url: str = "https://demo-api.ig.com/gateway/deal"
    # 2 = CST/X-SECURITY-TOKEN session, 3 = OAuth
    api_version: int = 3
    timeout_seconds: float = 30.0
    user_agent: str = "ig-gateway/1.0"

    @field_validator('api_version')
    @classmethod
    def validate_api_version(cls, v):
        if v not in (2, 3):
            raise ValueError("api_version must be 2 or 3")
        return v

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")


class RateLimiterSettings(BaseModel):
    """Token bucket parameters for one traffic class"""
    max_requests: int = 60
    period_seconds: float = 60.0
    burst_size: int = 10

    @field_validator('max_requests', 'burst_size')
    @classmethod
    def validate_positive_int(cls, v):
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator('period_seconds')
    @classmethod
    def validate_period(cls, v):
        if v <= 0:
            raise ValueError("period_seconds must be positive")
        return v


class RateLimitSettings(BaseModel):
    # IG publishes separate allowances for dealing and non-dealing requests
    non_trading: RateLimiterSettings = RateLimiterSettings(max_requests=60, period_seconds=60.0, burst_size=10)
    trading: RateLimiterSettings = RateLimiterSettings(max_requests=100, period_seconds=60.0, burst_size=10)


class SessionSettings(BaseModel):
    # IG OAuth access tokens live for 60 seconds
    safety_margin_seconds: float = 10.0
    background_refresh_enabled: bool = True
    refresh_interval_seconds: float = 15.0
    # Budget for transient refresh/login failures inside one refresh cycle
    auth_retry_attempts: int = 3
    auth_retry_delay_seconds: float = 1.0


class RetrySettings(BaseModel):
    rate_limit_delay_seconds: float = 10.0
    # None keeps retrying until the remote allowance clears
    max_rate_limit_retries: Optional[int] = None


class DatabaseSettings(BaseModel):
    postgres_url: str = "postgresql+asyncpg://ig:ig@localhost:5432/ig"
    schema_management: str = Field(
        default="auto",  # auto, create_all, skip
        description="Database schema management strategy"
    )


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_format: bool = True

    # Console logging
    console_enabled: bool = True
    console_json_format: bool = False

    # File logging
    file_enabled: bool = False
    logs_dir: str = "logs"
    file_max_size: str = "50MB"
    file_backup_count: int = 5

    # Redaction
    redact_keys: list[str] = [
        "authorization", "access_token", "refresh_token", "api_key", "x-ig-api-key",
        "password", "cst", "x-security-token", "x_security_token", "token", "secret"
    ]


class Settings(BaseSettings):
    """Main application settings, loaded from environment variables"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    app_name: str = "IG Gateway"
    version: str = "1.0.0"
    environment: Environment = Environment.DEVELOPMENT

    ig: IGSettings = IGSettings()
    rate_limiter: RateLimitSettings = RateLimitSettings()
    session: SessionSettings = SessionSettings()
    retry: RetrySettings = RetrySettings()
    database: DatabaseSettings = DatabaseSettings()
    logging: LoggingSettings = LoggingSettings()

    @property
    def logs_dir(self) -> str:
        """Logs directory from the logging section"""
        return self.logging.logs_dir

    def missing_credentials(self) -> list[str]:
        """Names of IG credential fields that are still empty."""
        return [
            name for name in ("username", "password", "api_key")
            if not getattr(self.ig, name)
        ]


# No global settings instance - use dependency injection instead
