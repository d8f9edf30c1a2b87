from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Limiter settings loaded from environment variables.

    All settings can be configured via TOKEN_BUCKET_* environment variables
    or a .env file. Explicit constructor arguments always win over these.
    """

    # Bucket parameters
    refill_rate_per_second: float = 10.0
    capacity: float = 20.0
    key_prefix: str = ""
    time_unit_ms: int = 1000  # Refill granularity; 1 gives continuous refill

    # Per-key cooldown after a denial (0 disables)
    lock_duration_seconds: int = 0

    # Abuse guard (fixed one-minute window, None disables)
    abuse_threshold_per_minute: int | None = None
    abuse_lockout_seconds: int = 60
    abuse_sweep_threshold: int = 999  # Entry count that triggers a lazy sweep

    # Insurance limiter used when Redis is unreachable
    insurance_enabled: bool = False
    insurance_refill_rate_per_second: float | None = None
    insurance_capacity: float | None = None

    # Redis settings (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_key_expiry_ms: int = 60000  # Idle expiry, never below the time to refill from empty
    redis_timeout_seconds: float | None = None  # Per-call script timeout
    readiness_check_interval: float = 1.0  # Seconds a PING result is trusted

    # Local store housekeeping
    local_idle_ttl_seconds: int = 60  # Same floor as redis_key_expiry_ms
    local_sweep_threshold: int = 10000
    cleanup_interval_seconds: float = 30.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = Field(default="text")  # text | structured | json

    @field_validator("refill_rate_per_second", "capacity")
    @classmethod
    def validate_bucket_positive(cls, v: float) -> float:
        """Validate bucket parameters are positive."""
        if v <= 0:
            raise ValueError("refill rate and capacity must be positive")
        return v

    @field_validator("insurance_refill_rate_per_second", "insurance_capacity")
    @classmethod
    def validate_insurance_positive(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("insurance refill rate and capacity must be positive")
        return v

    @field_validator("time_unit_ms", "redis_key_expiry_ms")
    @classmethod
    def validate_ms_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("millisecond values must be at least 1")
        return v

    @field_validator("lock_duration_seconds", "abuse_lockout_seconds")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("durations must not be negative")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is one of the supported renderers."""
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(
        env_prefix="TOKEN_BUCKET_", env_file=".env", extra="ignore"
    )


# Global settings instance
settings = Settings()
