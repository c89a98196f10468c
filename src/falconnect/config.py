"""Configuration models for the HTTP client pipeline."""

from pathlib import Path
from typing import Annotated, Any, Literal

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from falconnect.constants import (
    DEFAULT_BURST_SECONDS,
    DEFAULT_CACHE_DURATION_SECONDS,
    DEFAULT_GLOBAL_RATE_LIMIT,
    DEFAULT_MAX_CACHE_SIZE_BYTES,
    DEFAULT_MAX_QUEUE_SIZE,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_MAX_RETRY_DELAY_SECONDS,
    DEFAULT_PER_HOST_RATE_LIMIT,
    DEFAULT_RATE_WINDOW_SECONDS,
    DEFAULT_RETRY_DELAY_SECONDS,
)


logger = structlog.get_logger()

PresetName = Literal["default", "production", "development", "test"]

_MB = 1024 * 1024


class RateLimitConfig(BaseModel):
    """Token-bucket rate limiting settings.

    Bucket capacity is ``rate * burst_seconds`` so a quiet client may burst
    up to ``burst_seconds`` worth of requests at once.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    global_rate_limit: Annotated[int, Field(gt=0)] = DEFAULT_GLOBAL_RATE_LIMIT
    per_host_rate_limit: Annotated[int, Field(gt=0)] = DEFAULT_PER_HOST_RATE_LIMIT
    burst_seconds: Annotated[int, Field(gt=0, le=3600)] = DEFAULT_BURST_SECONDS
    window_seconds: Annotated[float, Field(gt=0)] = DEFAULT_RATE_WINDOW_SECONDS
    queue_requests: bool = True
    max_queue_size: Annotated[int, Field(ge=0)] = DEFAULT_MAX_QUEUE_SIZE


class HttpClientConfig(BaseModel):
    """Configuration for the HTTP client and its interceptors.

    Durations are in seconds, sizes in bytes. Use the production(),
    development() and test() presets as starting points and copy_with()
    for overrides.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str | None = None
    connect_timeout: Annotated[float, Field(gt=0, le=600)] = 30.0
    receive_timeout: Annotated[float, Field(gt=0, le=600)] = 30.0
    send_timeout: Annotated[float, Field(gt=0, le=600)] = 30.0
    max_retry_attempts: Annotated[int, Field(ge=0, le=10)] = (
        DEFAULT_MAX_RETRY_ATTEMPTS
    )
    retry_delay: Annotated[float, Field(ge=0, le=60)] = DEFAULT_RETRY_DELAY_SECONDS
    max_retry_delay: Annotated[float, Field(ge=0, le=600)] = (
        DEFAULT_MAX_RETRY_DELAY_SECONDS
    )
    enable_cache: bool = True
    max_cache_size: Annotated[int, Field(gt=0)] = DEFAULT_MAX_CACHE_SIZE_BYTES
    cache_duration: Annotated[float, Field(ge=0)] = DEFAULT_CACHE_DURATION_SECONDS
    enable_logging: bool = False
    log_bodies: bool = False
    enable_performance_monitoring: bool = True
    max_connections_per_host: Annotated[int, Field(ge=1, le=1000)] = 5
    idle_connection_timeout: Annotated[float, Field(gt=0)] = 15.0
    validate_certificates: bool = True
    follow_redirects: bool = True
    max_redirects: Annotated[int, Field(ge=0, le=50)] = 5
    user_agent: str | None = Field(default=None, description="User-Agent header")
    default_headers: dict[str, str] = Field(default_factory=dict)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    @field_validator("default_headers")
    @classmethod
    def validate_no_auth_headers(cls, v: dict[str, str]) -> dict[str, str]:
        """Ensure no credentials are stored in config."""
        forbidden = {"authorization", "cookie", "x-api-key"}
        for key in v:
            if key.lower() in forbidden:
                msg = (
                    f"Header '{key}' must not be stored in config; "
                    "use HttpClient.set_bearer_token() or per-request headers"
                )
                raise ValueError(msg)
        return v

    @classmethod
    def production(cls) -> "HttpClientConfig":
        """Conservative settings with larger cache and timeouts."""
        return cls(
            connect_timeout=30.0,
            receive_timeout=60.0,
            send_timeout=60.0,
            max_retry_attempts=3,
            retry_delay=2.0,
            max_retry_delay=60.0,
            enable_cache=True,
            max_cache_size=100 * _MB,
            cache_duration=30 * 60.0,
            enable_logging=False,
            log_bodies=False,
            enable_performance_monitoring=True,
            max_connections_per_host=10,
            idle_connection_timeout=30.0,
            validate_certificates=True,
            follow_redirects=True,
            max_redirects=5,
        )

    @classmethod
    def development(cls) -> "HttpClientConfig":
        """Verbose logging, no cache and short timeouts."""
        return cls(
            connect_timeout=10.0,
            receive_timeout=30.0,
            send_timeout=30.0,
            max_retry_attempts=1,
            retry_delay=1.0,
            max_retry_delay=5.0,
            enable_cache=False,
            max_cache_size=10 * _MB,
            cache_duration=5 * 60.0,
            enable_logging=True,
            log_bodies=True,
            enable_performance_monitoring=True,
            max_connections_per_host=3,
            idle_connection_timeout=10.0,
            validate_certificates=False,
            follow_redirects=True,
            max_redirects=3,
        )

    @classmethod
    def test(cls) -> "HttpClientConfig":
        """Minimal timeouts, retries disabled and no cache."""
        return cls(
            connect_timeout=5.0,
            receive_timeout=5.0,
            send_timeout=5.0,
            max_retry_attempts=0,
            retry_delay=0.1,
            max_retry_delay=1.0,
            enable_cache=False,
            max_cache_size=1 * _MB,
            cache_duration=30.0,
            enable_logging=True,
            log_bodies=False,
            enable_performance_monitoring=False,
            max_connections_per_host=1,
            idle_connection_timeout=1.0,
            validate_certificates=False,
            follow_redirects=False,
            max_redirects=0,
        )

    @classmethod
    def preset(cls, name: PresetName) -> "HttpClientConfig":
        """Get a named preset ('default' gives the plain defaults)."""
        factories = {
            "default": cls,
            "production": cls.production,
            "development": cls.development,
            "test": cls.test,
        }
        return factories[name]()

    def copy_with(self, **overrides: Any) -> "HttpClientConfig":
        """Create a validated copy of this configuration with overrides.

        Args:
            **overrides: Field values to replace. ``rate_limit`` may be a
                dict of partial overrides.

        Returns:
            New HttpClientConfig.
        """
        data = self.model_dump()
        rate_limit = overrides.pop("rate_limit", None)
        if isinstance(rate_limit, RateLimitConfig):
            data["rate_limit"] = rate_limit.model_dump()
        elif rate_limit:
            data["rate_limit"].update(rate_limit)
        data.update(overrides)
        return HttpClientConfig.model_validate(data)


class ConfigValidationError(Exception):
    """Raised when a configuration file fails validation."""

    def __init__(self, errors: list[dict[str, str]], file_path: str) -> None:
        """Initialize the error.

        Args:
            errors: List of validation error details.
            file_path: Path to the file that failed validation.
        """
        self.errors = errors
        self.file_path = file_path
        super().__init__(f"Validation failed for {file_path}: {len(errors)} errors")


def load_config(path: Path) -> HttpClientConfig:
    """Load a client configuration from a YAML file.

    The optional ``preset`` key selects the base preset; every other key
    overrides a field of that preset.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated HttpClientConfig.

    Raises:
        ConfigValidationError: If the file is not valid YAML or fails
            schema validation.
    """
    log = logger.bind(component="config", file_path=str(path))

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        log.warning("config_load_failed", error=str(e))
        raise ConfigValidationError(
            [{"loc": "", "msg": str(e), "type": type(e).__name__}], str(path)
        ) from e

    if not isinstance(raw, dict):
        raise ConfigValidationError(
            [{"loc": "", "msg": "top-level value must be a mapping", "type": "type"}],
            str(path),
        )

    preset_name = raw.pop("preset", "default")
    try:
        base = HttpClientConfig.preset(preset_name)
        config = base.copy_with(**raw)
    except KeyError as e:
        raise ConfigValidationError(
            [{"loc": "preset", "msg": f"unknown preset {e}", "type": "value"}],
            str(path),
        ) from e
    except ValidationError as e:
        errors = [
            {
                "loc": ".".join(str(part) for part in err["loc"]),
                "msg": err["msg"],
                "type": err["type"],
            }
            for err in e.errors()
        ]
        log.warning("config_validation_failed", error_count=len(errors))
        raise ConfigValidationError(errors, str(path)) from e

    log.debug("config_loaded", preset=preset_name)
    return config
