"""
Shared Configuration - Application Settings and Environment Management
Centralized configuration management for the Khesed-tek marketing site API.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Rate limiting policy thresholds
- CSRF, security header and request validation settings
"""
from typing import Annotated, List
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from enum import Enum


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _split_csv(v):
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    return v


class RateLimitSettings(BaseSettings):
    """Rate limiting and abuse detection settings."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", env_file=".env",
                                      case_sensitive=False, extra="ignore")

    enabled: bool = True

    # Named policies
    global_window_ms: int = 15 * 60 * 1000
    global_max_requests: int = 100
    api_window_ms: int = 15 * 60 * 1000
    api_max_requests: int = 50
    auth_window_ms: int = 15 * 60 * 1000
    auth_max_requests: int = 5
    contact_window_ms: int = 60 * 60 * 1000
    contact_max_requests: int = 10

    # Abuse detection
    rapid_fire_multiplier: float = 5
    rapid_fire_block_ms: int = 15 * 60 * 1000
    persistent_rate_multiplier: float = 3
    persistent_block_ms: int = 10 * 60 * 1000

    # Housekeeping
    audit_log_max_entries: int = 1000
    sweep_every_n_requests: int = 1000
    cleanup_interval_seconds: int = 300

    # Proxies allowed to set x-forwarded-for / x-real-ip (empty = trust all)
    trusted_proxies: Annotated[List[str], NoDecode] = []

    @field_validator("trusted_proxies", mode="before")
    @classmethod
    def parse_trusted_proxies(cls, v):
        return _split_csv(v)

    @field_validator(
        "global_max_requests", "api_max_requests",
        "auth_max_requests", "contact_max_requests"
    )
    @classmethod
    def validate_max_requests(cls, v):
        if v < 1:
            raise ValueError("max_requests must be at least 1")
        return v

    @field_validator(
        "global_window_ms", "api_window_ms",
        "auth_window_ms", "contact_window_ms"
    )
    @classmethod
    def validate_window(cls, v):
        if v < 1000:
            raise ValueError("Rate limit windows must be at least one second")
        return v


class CSRFSettings(BaseSettings):
    """CSRF protection settings."""

    model_config = SettingsConfigDict(env_prefix="CSRF_", env_file=".env",
                                      case_sensitive=False, extra="ignore")

    enabled: bool = True
    token_length: int = 32
    cookie_name: str = "khesed-csrf-token"
    header_name: str = "x-csrf-token"
    token_ttl_seconds: int = 24 * 60 * 60
    same_site: str = "Strict"

    @field_validator("token_length")
    @classmethod
    def validate_token_length(cls, v):
        if v < 16:
            raise ValueError("CSRF tokens need at least 16 bytes of randomness")
        return v

    @field_validator("same_site")
    @classmethod
    def validate_same_site(cls, v):
        if v.capitalize() not in ("Strict", "Lax"):
            raise ValueError("same_site must be Strict or Lax")
        return v.capitalize()


class HeaderSettings(BaseSettings):
    """Security response header toggles."""

    model_config = SettingsConfigDict(env_prefix="SECURITY_HEADERS_", env_file=".env",
                                      case_sensitive=False, extra="ignore")

    content_security_policy: bool = True
    hsts: bool = True
    no_sniff: bool = True
    frame_options: bool = True
    xss_protection: bool = True


class RequestValidationSettings(BaseSettings):
    """Structural request validation settings."""

    model_config = SettingsConfigDict(env_prefix="REQUEST_VALIDATION_", env_file=".env",
                                      case_sensitive=False, extra="ignore")

    allowed_origins: Annotated[List[str], NoDecode] = [
        "https://khesedtek.com",
        "https://www.khesedtek.com",
    ]
    development_origins: Annotated[List[str], NoDecode] = ["http://localhost:3000"]
    allowed_content_types: Annotated[List[str], NoDecode] = [
        "application/json",
        "application/x-www-form-urlencoded",
        "multipart/form-data",
    ]
    max_request_bytes: int = 10 * 1024 * 1024

    @field_validator("allowed_origins", "development_origins", "allowed_content_types", mode="before")
    @classmethod
    def parse_lists(cls, v):
        return _split_csv(v)


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    log_level: LogLevel = LogLevel.INFO
    log_format: str = "colored"
    log_file: str = ""


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application settings
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True
    app_name: str = "Khesed-tek Marketing Site API"
    app_version: str = "1.4.0"

    # Component settings
    rate_limit: RateLimitSettings = RateLimitSettings()
    csrf: CSRFSettings = CSRFSettings()
    headers: HeaderSettings = HeaderSettings()
    request_validation: RequestValidationSettings = RequestValidationSettings()
    monitoring: MonitoringSettings = MonitoringSettings()

    @field_validator("debug")
    @classmethod
    def validate_debug_in_production(cls, v, info):
        if hasattr(info, 'data') and info.data.get("environment") == Environment.PRODUCTION and v:
            raise ValueError("Debug mode should not be enabled in production")
        return v

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING

    def get_allowed_origins(self) -> List[str]:
        """Allowed request origins, including local dev servers in development."""
        origins = list(self.request_validation.allowed_origins)
        if self.is_development():
            origins.extend(
                origin for origin in self.request_validation.development_origins
                if origin not in origins
            )
        return origins


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get application settings.
    This function can be used as a FastAPI dependency.
    """
    return settings


# Configuration validation
def validate_configuration(config: Settings = None) -> List[str]:
    """
    Validate the configuration and return any problems found.

    Returns:
        List of validation error messages
    """
    config = config or settings
    errors = []

    if config.is_production():
        if config.debug:
            errors.append("Debug mode should be disabled in production")

        if "*" in config.request_validation.allowed_origins:
            errors.append("Wildcard origin is not allowed in production")

        if not config.csrf.enabled:
            errors.append("CSRF protection should be enabled in production")

        if not config.headers.hsts:
            errors.append("HSTS should be enabled in production")

    if not config.rate_limit.enabled:
        errors.append("Rate limiting is disabled")

    return errors


# Configuration summary for debugging
def get_config_summary(config: Settings = None) -> dict:
    """
    Get a summary of the current configuration (without sensitive data).

    Returns:
        Dictionary with configuration summary
    """
    config = config or settings
    return {
        "environment": config.environment,
        "debug": config.debug,
        "app_name": config.app_name,
        "app_version": config.app_version,
        "rate_limit": {
            "enabled": config.rate_limit.enabled,
            "global": [config.rate_limit.global_window_ms, config.rate_limit.global_max_requests],
            "api": [config.rate_limit.api_window_ms, config.rate_limit.api_max_requests],
            "auth": [config.rate_limit.auth_window_ms, config.rate_limit.auth_max_requests],
            "contact": [config.rate_limit.contact_window_ms, config.rate_limit.contact_max_requests],
            "trusted_proxies": len(config.rate_limit.trusted_proxies),
        },
        "csrf": {
            "enabled": config.csrf.enabled,
            "cookie_name": config.csrf.cookie_name,
            "header_name": config.csrf.header_name,
        },
        "allowed_origins": config.get_allowed_origins(),
        "monitoring": {
            "log_level": config.monitoring.log_level,
        },
    }
