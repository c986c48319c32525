"""
Configuration management with environment variable validation.
Loads and validates all configuration from environment variables.
"""
import json
from typing import List, Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="movie-api")
    app_version: str = Field(default="2.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Server (movie-api entry point)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8787)
    reload: bool = Field(default=False)

    # Security
    admin_api_key: str = Field(...)  # Required
    key_fingerprint_salt: str = Field(default="movie-api-admin-sessions")
    admin_uid: str = Field(default="admin_user")
    admin_email: str = Field(default="admin@moviedb.com")
    admin_session_ttl_hours: int = Field(default=24, ge=1)
    admin_login_failure_delay: float = Field(default=1.0, ge=0)

    # Database
    database_url: str = Field(...)  # Required
    database_pool_size: int = Field(default=5)
    database_max_overflow: int = Field(default=10)
    database_echo: bool = Field(default=False)

    # Admission gate
    default_daily_limit: int = Field(default=100, ge=0)
    honor_key_daily_limit: bool = Field(default=False)
    signature_max_skew_ms: int = Field(default=300_000, ge=0)
    usage_log_retention_days: int = Field(default=90, ge=1)
    cleanup_interval_hours: int = Field(default=24, ge=1)

    # Login throttling (slowapi)
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_storage_uri: str = Field(default="memory://")
    admin_login_rate_limit: str = Field(default="10/minute")

    # Logging
    log_format: str = Field(default="json")
    log_file_enabled: bool = Field(default=False)
    log_file_path: str = Field(default="/app/logs/movie-api.log")
    log_file_max_size: int = Field(default=10485760)  # 10MB
    log_file_backup_count: int = Field(default=5)

    # CORS
    cors_enabled: bool = Field(default=True)
    cors_origins: List[str] = Field(default=["*"])

    @field_validator("admin_api_key")
    @classmethod
    def validate_secrets(cls, v: str, info: ValidationInfo) -> str:
        """Ensure security-critical values are not defaults."""
        if not v or v in ["CHANGE_ME", "changeme", "password", "secret"]:
            raise ValueError(
                f"{info.field_name} must be set to a secure value. "
                f"Generate with: python -c \"import secrets; print('mk_' + secrets.token_urlsafe(32))\""
            )
        if len(v) < 32:
            raise ValueError(f"{info.field_name} must be at least 32 characters long")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        allowed = ["json", "console"]
        if v not in allowed:
            raise ValueError(f"log_format must be one of: {allowed}")
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from JSON string if needed."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return v.split(",")
        return v

    @property
    def log_file(self) -> Optional[str]:
        return self.log_file_path if self.log_file_enabled else None


def validate_environment(**overrides) -> Settings:
    """
    Validate environment configuration on startup.
    Raises ValueError if required variables are missing or invalid.
    """
    try:
        settings = Settings(**overrides)

        # Additional validation
        if settings.environment == "production":
            if settings.debug:
                raise ValueError("DEBUG must be False in production")
            if settings.reload:
                raise ValueError("RELOAD must be False in production")
            if settings.database_echo:
                raise ValueError("DATABASE_ECHO must be False in production")
            if settings.database_url.startswith("sqlite"):
                raise ValueError("DATABASE_URL must point at PostgreSQL in production")

        # Validate database URL format
        if not settings.database_url.startswith(("postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be an async connection string "
                "(postgresql+asyncpg:// or sqlite+aiosqlite://)"
            )

        return settings

    except Exception as e:
        print("\nEnvironment Configuration Error:")
        print(f"   {str(e)}\n")
        print("Tip: Copy .env.example to .env and fill in your values")
        raise


# Global settings instance
settings = validate_environment()
