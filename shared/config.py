"""
Shared configuration management for the session auth engine.
"""

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigurationError


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="SESSION_AUTH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Observability
    enable_metrics: bool = Field(default=True)


class AuthSettings(BaseConfig):
    """Settings for token validation, exchange and session caching."""

    # Security
    shared_secret: SecretStr
    expected_audience: str
    scopes: str = Field(default="")

    # Tenants
    tenant_domain_suffix: str = Field(default=".myshopify.com")
    exchange_endpoint_template: str = Field(default="https://{tenant}/admin/oauth/access_token")

    # Session cache
    cache_ttl_seconds: int = Field(default=300, gt=0)
    cache_max_size: int = Field(default=1000, gt=0)
    validation_cache_ttl_seconds: int = Field(default=60, gt=0)
    refresh_threshold_seconds: int = Field(default=15, ge=0)
    cleanup_interval_seconds: float = Field(default=300.0, gt=0)
    enable_proactive_refresh: bool = Field(default=True)

    # Token exchange
    exchange_max_attempts: int = Field(default=6, ge=1)
    exchange_base_delay: float = Field(default=0.5, ge=0)
    exchange_max_delay: float = Field(default=15.0, gt=0)
    exchange_max_total_wait: float = Field(default=60.0, gt=0)
    exchange_attempt_timeout: float = Field(default=10.0, gt=0)
    exchange_jitter: float = Field(default=1.0, ge=0)

    # Degraded mode
    degraded_failure_threshold: int = Field(default=3, ge=1)
    degraded_window_seconds: float = Field(default=300.0, gt=0)

    @field_validator("shared_secret")
    @classmethod
    def _secret_not_blank(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("shared secret must not be empty")
        return value

    @field_validator("expected_audience")
    @classmethod
    def _audience_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("expected audience must not be empty")
        return value


class ServiceConfig(AuthSettings):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def _config_error(exc: ValidationError) -> ConfigurationError:
    fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
    return ConfigurationError(
        f"Invalid configuration: {', '.join(fields)}",
        details={"fields": fields}
    )


def get_settings(**overrides) -> AuthSettings:
    """Load auth settings from the environment, failing fast on bad values."""
    try:
        return AuthSettings(**overrides)
    except ValidationError as exc:
        raise _config_error(exc) from None


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    try:
        return ServiceConfig(service_name=service_name, port=port, **overrides)
    except ValidationError as exc:
        raise _config_error(exc) from None


