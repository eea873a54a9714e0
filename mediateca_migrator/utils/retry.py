"""Retry utilities for object-store calls."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Any, TypeVar, cast

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from pydantic import BaseModel, ConfigDict, Field, field_validator
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_EXCEPTIONS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


class RetryConfig(BaseModel):
    """Configuration object describing object-store retry behaviour."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_attempts: int = Field(default=4, ge=1)
    backoff_factor: float = Field(default=0.5, gt=0)
    max_backoff: float | None = Field(default=10.0, gt=0)
    jitter: float = Field(default=0.0, ge=0)
    retryable_error_codes: list[str] = Field(
        default_factory=lambda: [
            "Throttling",
            "ThrottlingException",
            "SlowDown",
            "RequestTimeout",
            "RequestLimitExceeded",
            "InternalError",
            "ServiceUnavailable",
        ]
    )

    @field_validator("retryable_error_codes", mode="before")
    @classmethod
    def _coerce_codes(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if not isinstance(value, (list, tuple, set)):
            raise ValueError("retryable_error_codes must be a sequence of error codes")
        return [str(item).strip() for item in value if str(item).strip()]

    @classmethod
    def from_mapping(cls, value: Any) -> RetryConfig:
        """Parse retry configuration from a user-provided mapping."""

        if value is None:
            return cls()
        if not isinstance(value, dict):
            raise ValueError("retry configuration must be a mapping of options")
        return cls.model_validate(value)

    def describe(self) -> dict[str, Any]:
        """Return a serialisable summary useful for logging/metrics."""

        return {
            "enabled": self.enabled,
            "max_attempts": self.max_attempts,
            "backoff_factor": self.backoff_factor,
            "max_backoff": self.max_backoff,
            "jitter": self.jitter,
        }


def is_transient_error(exc: BaseException, config: RetryConfig) -> bool:
    """Return True when ``exc`` is a throttling, timeout or server-side failure."""

    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        if code in config.retryable_error_codes:
            return True
        status_code = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        try:
            return int(status_code) >= 500
        except (TypeError, ValueError):
            return False
    return False


def _wait_strategy(config: RetryConfig) -> Callable[[RetryCallState], float]:
    def _wait(retry_state: RetryCallState) -> float:
        attempt_number = max(retry_state.attempt_number, 1)
        delay = config.backoff_factor * (2 ** (attempt_number - 1))
        if config.max_backoff is not None:
            delay = min(delay, config.max_backoff)
        if config.jitter > 0:
            delay += random.uniform(0, config.jitter)
        return max(delay, 0.0)

    return _wait


def call_with_retry(
    operation: Callable[[], T],
    *,
    retry_config: RetryConfig,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> T:
    """Run ``operation`` retrying transient object-store failures with backoff.

    Non-transient errors propagate immediately. When every attempt fails the last
    exception is re-raised so callers can classify it.
    """

    if not retry_config.enabled or retry_config.max_attempts <= 1:
        return operation()

    logger_to_use = log or logger
    if isinstance(logger_to_use, logging.LoggerAdapter):
        sleep_logger = cast(logging.Logger, logger_to_use.logger)
    else:
        sleep_logger = logger_to_use

    retrying = Retrying(
        stop=stop_after_attempt(retry_config.max_attempts),
        wait=_wait_strategy(retry_config),
        retry=retry_if_exception(lambda exc: is_transient_error(exc, retry_config)),
        before_sleep=before_sleep_log(sleep_logger, logging.WARNING),
        reraise=True,
    )
    return retrying(operation)
