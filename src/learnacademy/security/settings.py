"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for the security core configuration.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SECRET_KEY = "change-me-in-production"


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: AUDIT__RETENTION_DAYS=400
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("learnacademy-security", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # Security
    secret_key: str = Field(
        DEFAULT_SECRET_KEY, description="Fallback secret for signing (override in production)"
    )

    # Reverse proxies whose X-Forwarded-For is honoured, as addresses or CIDR
    # networks, e.g. TRUSTED_PROXIES='["10.0.0.0/8"]'. Empty means the socket peer is the client.
    trusted_proxies: list[str] = Field(default_factory=list, description="Trusted reverse proxies")

    # ============================================================
    # Redis Configuration
    # ============================================================

    class RedisSettings(BaseModel):
        """Redis configuration."""

        enabled: bool = Field(False, description="Use Redis as the distributed store")
        url: str | None = Field(None, description="Full Redis URL")
        host: str = Field("localhost", description="Redis host")
        port: int = Field(6379, description="Redis port")
        password: str = Field("", description="Redis password")
        db: int = Field(0, description="Redis database number")
        max_connections: int = Field(50, description="Max connections in pool")

        @property
        def redis_url(self) -> str:
            """Build Redis URL."""
            if self.url:
                return self.url
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
            return f"redis://{self.host}:{self.port}/{self.db}"

    redis: RedisSettings = RedisSettings()  # type: ignore[call-arg]

    # ============================================================
    # JWT & Authentication
    # ============================================================

    class JWTSettings(BaseModel):
        """JWT configuration."""

        secret_key: str | None = Field(None, description="JWT secret key")
        algorithm: str = Field("HS256", description="JWT algorithm")
        access_token_expire_hours: int = Field(24, description="Access token expiration")
        issuer: str = Field("learn-academy", description="JWT issuer")
        audience: str = Field("learn-academy-api", description="JWT audience")
        min_session_id_length: int = Field(32, description="Minimum accepted session id length")

    jwt: JWTSettings = JWTSettings()  # type: ignore[call-arg]

    # ============================================================
    # CSRF
    # ============================================================

    class CSRFSettings(BaseModel):
        """CSRF token configuration."""

        secret: str | None = Field(None, description="HMAC secret for CSRF tokens")
        expiry_seconds: int = Field(30 * 60, description="Token lifetime")
        refresh_window_seconds: int = Field(5 * 60, description="Refresh tokens this close to expiry")
        protected_paths: list[str] = Field(
            default_factory=lambda: ["/api/contact", "/api/enrollment"],
            description="Form endpoints that require a CSRF token",
        )

    csrf: CSRFSettings = CSRFSettings()  # type: ignore[call-arg]

    # ============================================================
    # Audit Logging
    # ============================================================

    class AuditSettings(BaseModel):
        """Audit log configuration."""

        log_dir: str = Field("logs/audit", description="Directory for audit partitions")
        hash_secret: str | None = Field(None, description="Secret mixed into event hashes")
        retention_days: int = Field(365, description="Days to keep audit partitions")
        max_file_size_bytes: int = Field(10 * 1024 * 1024, description="Rotate partitions above")
        retention_check_interval_seconds: int = Field(3600, description="Retention sweep interval")

    audit: AuditSettings = AuditSettings()  # type: ignore[call-arg]

    # ============================================================
    # Rate Limiting
    # ============================================================

    class RateLimitSettings(BaseModel):
        """Rate limiting configuration."""

        enabled: bool = Field(True, description="Enable rate limiting")
        key_prefix: str = Field("rate_limit", description="Key prefix for storage")
        cleanup_interval_seconds: int = Field(300, description="Memory store sweep interval")

        # Per-rule overrides, e.g. RATE_LIMIT__RULES='{"contact": {"max_requests": 5}}'
        rules: dict[str, dict[str, int]] = Field(
            default_factory=dict, description="Per-rule window/max overrides"
        )

    rate_limit: RateLimitSettings = RateLimitSettings()  # type: ignore[call-arg]

    # ============================================================
    # Encryption
    # ============================================================

    class EncryptionSettings(BaseModel):
        """Field-level encryption configuration."""

        master_key: str | None = Field(None, description="Master key material (hex)")
        default_rotation_days: int = Field(90, description="Key rotation interval")
        rotation_check_interval_seconds: int = Field(3600, description="Rotation sweep interval")

    encryption: EncryptionSettings = EncryptionSettings()  # type: ignore[call-arg]

    # ============================================================
    # Security Monitoring
    # ============================================================

    class MonitoringSettings(BaseModel):
        """Security monitor configuration."""

        metrics_interval_seconds: int = Field(30, description="Metrics refresh interval")
        threat_interval_seconds: int = Field(60, description="Threat analysis interval")
        cleanup_interval_seconds: int = Field(3600, description="Cleanup interval")
        retention_days: int = Field(7, description="Alert/metric retention")
        alert_dedup_minutes: int = Field(30, description="Suppress repeated alerts per rule")
        temporary_block_minutes: int = Field(60, description="Duration of temporary IP blocks")
        webhook_url: str | None = Field(None, description="Admin notification webhook")
        webhook_retry_attempts: int = Field(3, description="Delivery attempts per webhook notification")
        webhook_retry_delay_seconds: float = Field(1.0, description="Initial backoff between webhook attempts")
        api_source_dirs: list[str] = Field(
            default_factory=list, description="Route source directories for the API auditor"
        )

    monitoring: MonitoringSettings = MonitoringSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_redaction: bool = Field(True, description="Scrub PII from log output")
        enable_metrics: bool = Field(True, description="Expose Prometheus metrics at /metrics")
        enable_correlation_ids: bool = Field(True, description="Bind a correlation id to every request")
        correlation_id_header: str = Field("X-Correlation-ID", description="Correlation ID header")
        enable_request_logging: bool = Field(True, description="Log one line per HTTP request")

        # Remote log sink (LOG_ENDPOINT in older deployments)
        log_endpoint: str | None = Field(None, description="HTTP endpoint receiving log batches")
        log_endpoint_batch_size: int = Field(50, description="Entries per POST")
        log_endpoint_flush_interval_seconds: float = Field(2.0, description="Max delay before a partial batch is sent")
        log_endpoint_queue_size: int = Field(10_000, description="Entries buffered before new ones are dropped")
        log_endpoint_timeout_seconds: float = Field(5.0, description="Per-request timeout")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator("secret_key")
    def validate_secret_key(cls, v: str, info: Any) -> str:
        """Validate secret key."""
        if v == DEFAULT_SECRET_KEY and info.data.get("environment") == Environment.PRODUCTION:
            raise ValueError("Secret key must be changed in production")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST

    def secret_for(self, name: str) -> str:
        """Return a component secret, falling back to the application secret."""
        component_secrets = {
            "audit": self.audit.hash_secret,
            "csrf": self.csrf.secret,
            "jwt": self.jwt.secret_key,
        }
        return component_secrets.get(name) or self.secret_key

    def insecure_defaults(self) -> list[str]:
        """Names of secrets still running on development fallbacks."""
        missing = [
            name for name in ("audit", "csrf", "jwt") if self.secret_for(name) == DEFAULT_SECRET_KEY
        ]
        if not self.encryption.master_key:
            missing.append("encryption")
        return missing


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
