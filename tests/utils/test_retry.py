"""Tests for object-store retry utilities."""

import logging
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from mediateca_migrator.utils.retry import RetryConfig, call_with_retry, is_transient_error

FAST = RetryConfig(max_attempts=3, backoff_factor=0.001, max_backoff=0.002)


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "CopyObject",
    )


class TestRetryConfig:
    """Test suite for RetryConfig model."""

    def test_defaults(self):
        """Retries are on by default with exponential backoff."""
        config = RetryConfig()

        assert config.enabled is True
        assert config.max_attempts == 4
        assert "SlowDown" in config.retryable_error_codes

    def test_codes_from_comma_separated_string(self):
        """Error codes may come from a single environment string."""
        config = RetryConfig(retryable_error_codes="SlowDown, Throttling,,")

        assert config.retryable_error_codes == ["SlowDown", "Throttling"]

    def test_invalid_values(self):
        """Non-positive attempts and delays are rejected."""
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValueError):
            RetryConfig(backoff_factor=0)
        with pytest.raises(ValueError):
            RetryConfig(jitter=-1)

    def test_from_mapping(self):
        """Mappings are validated and None means defaults."""
        assert RetryConfig.from_mapping(None) == RetryConfig()
        assert RetryConfig.from_mapping({"max_attempts": 2}).max_attempts == 2
        with pytest.raises(ValueError):
            RetryConfig.from_mapping(["max_attempts"])

    def test_describe(self):
        """The summary omits the error code list."""
        assert RetryConfig(jitter=0.1).describe() == {
            "enabled": True,
            "max_attempts": 4,
            "backoff_factor": 0.5,
            "max_backoff": 10.0,
            "jitter": 0.1,
        }


class TestTransientErrors:
    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (EndpointConnectionError(endpoint_url="http://s3.local"), True),
            (_client_error("SlowDown", 503), True),
            (_client_error("InternalError", 500), True),
            (_client_error("Unknown", 502), True),
            (_client_error("NoSuchKey", 404), False),
            (_client_error("AccessDenied", 403), False),
            (ValueError("bad"), False),
        ],
    )
    def test_classification(self, exc, expected):
        """Throttling, timeouts and server errors are transient."""
        assert is_transient_error(exc, RetryConfig()) is expected


class TestCallWithRetry:
    def test_succeeds_after_transient_failures(self, caplog):
        """Transient errors are retried until the call succeeds."""
        operation = Mock(side_effect=[_client_error("SlowDown", 503), _client_error("SlowDown", 503), "ok"])

        with caplog.at_level(logging.WARNING):
            assert call_with_retry(operation, retry_config=FAST) == "ok"

        assert operation.call_count == 3
        assert any("Retrying" in record.getMessage() for record in caplog.records)

    def test_reraises_after_last_attempt(self):
        """The last transient error propagates once attempts run out."""
        operation = Mock(side_effect=_client_error("SlowDown", 503))

        with pytest.raises(ClientError):
            call_with_retry(operation, retry_config=FAST)

        assert operation.call_count == 3

    def test_permanent_errors_are_not_retried(self):
        """Client errors such as a missing key fail immediately."""
        operation = Mock(side_effect=_client_error("NoSuchKey", 404))

        with pytest.raises(ClientError):
            call_with_retry(operation, retry_config=FAST)

        assert operation.call_count == 1

    def test_disabled_retry_calls_once(self):
        """Disabled retries run the operation a single time."""
        operation = Mock(side_effect=_client_error("SlowDown", 503))

        with pytest.raises(ClientError):
            call_with_retry(operation, retry_config=RetryConfig(enabled=False))

        assert operation.call_count == 1
