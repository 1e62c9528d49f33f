"""Client configuration.

Everything has a default, so `ClientConfig(base_url=...)` is enough to get a
working client. `ClientConfig.from_env()` builds a config from PULLMAN_*
environment variables, for workers deployed as containers.
"""

from dataclasses import dataclass, field, fields
import os
from typing import Any, Self

from pullman.constants import (
    DEFAULT_ASYNC_RESPONSE_TIMEOUT_MS,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BACKOFF_INITIAL_SECONDS,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_LOCK_DURATION_MS,
    DEFAULT_MAX_TASKS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_TIMEOUT_MS,
    DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    JSON_DATAFORMAT_NAME,
)
from pullman.utils.id_generator import generate_worker_id

ENV_PREFIX = "PULLMAN_"


@dataclass
class ClientConfig:
    """Configuration shared by the fetch loop, the executor and the coordinator transport."""

    # Root URL of the coordinator's REST API, e.g. http://localhost:8080/engine-rest
    base_url: str = "http://localhost:8080/engine-rest"
    # Identifies this worker to the coordinator; locks are owned per worker ID
    worker_id: str = field(default_factory=generate_worker_id)

    # Upper bound on tasks requested in one fetch
    max_tasks: int = DEFAULT_MAX_TASKS
    # Global cap on concurrently running handlers. Defaults to max_tasks
    max_workers: int | None = None
    # Long-poll timeout in milliseconds. None disables long polling
    async_response_timeout: int | None = DEFAULT_ASYNC_RESPONSE_TIMEOUT_MS
    # Default lock duration in milliseconds for subscriptions that don't set one
    lock_duration: int = DEFAULT_LOCK_DURATION_MS
    use_priority: bool = True
    # Seconds to sleep after an empty fetch response
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS

    backoff_initial: float = DEFAULT_BACKOFF_INITIAL_SECONDS
    backoff_max: float = DEFAULT_BACKOFF_MAX_SECONDS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    backoff_jitter: float = DEFAULT_BACKOFF_JITTER

    # HTTP timeout in seconds for report requests; fetches add the long-poll timeout on top
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Format used for object variables written by handlers
    default_serialization_format: str = JSON_DATAFORMAT_NAME
    # Re-encode a written variable in the format it was fetched with, if any
    reuse_fetched_format: bool = True

    default_retries: int = DEFAULT_RETRIES
    default_retry_timeout: int = DEFAULT_RETRY_TIMEOUT_MS

    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS
    # Wait for in-flight handlers on shutdown, rather than abandoning them
    drain_on_shutdown: bool = True

    def __post_init__(self) -> None:
        if self.max_tasks < 1:
            raise ValueError("max_tasks must be at least 1")

        if self.max_workers is None:
            self.max_workers = self.max_tasks
        elif self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        if self.lock_duration <= 0:
            raise ValueError("lock_duration must be positive")

        if self.backoff_initial < 0 or self.backoff_max < self.backoff_initial:
            raise ValueError("backoff_max must be at least backoff_initial, and both non-negative")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> Self:
        """Build a config from PULLMAN_* environment variables.

        @param environ: The environment to read. Defaults to os.environ
        @param overrides: Keyword arguments that take precedence over the environment
        @return: A new ClientConfig
        """

        environ = dict(os.environ) if environ is None else environ
        kwargs: dict[str, Any] = {}

        for config_field in fields(cls):
            raw = environ.get(ENV_PREFIX + config_field.name.upper())
            if raw is None:
                continue

            kwargs[config_field.name] = _coerce(config_field.name, raw, config_field.type)

        kwargs.update(overrides)
        return cls(**kwargs)


def _coerce(name: str, raw: str, annotation: Any) -> Any:
    """Convert an environment string to the field's declared type."""

    text = str(annotation)

    if raw.strip().lower() in ("", "none", "null") and "None" in text:
        return None

    if text.startswith("bool") or annotation is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")

    try:
        if text.startswith("int") or annotation is int:
            return int(raw)
        if text.startswith("float") or annotation is float:
            return float(raw)
    except ValueError as err:
        raise ValueError(f"Environment variable {ENV_PREFIX}{name.upper()} is not a valid number: {raw!r}") from err

    return raw
