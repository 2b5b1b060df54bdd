from __future__ import annotations

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fintrack_resilience.circuit_breaker.breaker import CircuitBreakerConfig
from fintrack_resilience.logging import get_log_level_value
from fintrack_resilience.retry import RetryPolicy

ENV_PREFIX = "FINTRACK_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Tunables for the finance tracker client resilience layer.

    Durations are in seconds.
    """

    model_config = prefixed_settings_config(ENV_PREFIX)

    api_base_url: str = "http://localhost:5000/api"
    refresh_path: str = "/auth/refresh"
    request_timeout: float = 30.0
    store_path: str | None = None
    log_level: str = "INFO"

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    monitoring_period: float = 300.0

    max_retries: int = 3
    base_delay: float = 1.0
    max_jitter: float = 1.0
    max_delay: float = 30.0

    refresh_threshold: float = 300.0
    warning_threshold: float = 600.0
    refresh_max_attempts: int = 3

    queue_capacity: int = 100
    inter_request_delay: float = 2.0
    queue_max_retries: int = 3

    @field_validator("api_base_url", "refresh_path", mode="before")
    @classmethod
    def _validate_required_string(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        if info.field_name == "api_base_url":
            return normalized.rstrip("/")
        if not normalized.startswith("/"):
            normalized = f"/{normalized}"
        return normalized

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        get_log_level_value(value)
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_resilience_settings(self) -> ResilienceSettings:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.refresh_max_attempts < 1:
            raise ValueError("refresh_max_attempts must be >= 1")
        if self.queue_capacity < 1:
            raise ValueError("queue_capacity must be >= 1")
        if self.max_retries < 0 or self.queue_max_retries < 0:
            raise ValueError("max_retries and queue_max_retries must be >= 0")
        for name in (
            "recovery_timeout",
            "monitoring_period",
            "base_delay",
            "max_jitter",
            "refresh_threshold",
            "warning_threshold",
            "inter_request_delay",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.warning_threshold < self.refresh_threshold:
            raise ValueError("warning_threshold must be >= refresh_threshold")
        return self

    @property
    def refresh_url(self) -> str:
        return f"{self.api_base_url}{self.refresh_path}"

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            recovery_timeout=self.recovery_timeout,
            monitoring_period=self.monitoring_period,
        )

    def retry_policy(self) -> RetryPolicy:
        """Build the per-call retry policy."""
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_jitter=self.max_jitter,
            max_delay=self.max_delay,
        )
