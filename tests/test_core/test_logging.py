"""
Tests for log processors and correlation context.
"""

from unittest.mock import MagicMock

import pytest

from payship.core.logging import (
    add_order_id,
    add_request_id,
    bind_order_id,
    clear_context,
    get_request_id,
    log_performance,
    redact_secrets,
    set_request_id,
)


@pytest.fixture(autouse=True)
def reset_context():
    clear_context()
    yield
    clear_context()


class TestRedactSecrets:
    """Test masking of credential fields."""

    def test_signature_masked(self) -> None:
        event = redact_secrets(None, "info", {"event": "x", "signature": "abcdef123456"})

        assert event["signature"] == "abcd***"

    @pytest.mark.parametrize(
        "field", ["razorpay_signature", "key_secret", "webhook_secret", "api_token", "operator_key"]
    )
    def test_credential_fields_masked(self, field) -> None:
        event = redact_secrets(None, "info", {field: "s3cr3t-value"})

        assert event[field] == "s3cr***"

    def test_other_fields_untouched(self) -> None:
        event = redact_secrets(None, "info", {"order_id": "ord-1", "amount": 29250})

        assert event == {"order_id": "ord-1", "amount": 29250}

    def test_empty_value_left_alone(self) -> None:
        event = redact_secrets(None, "info", {"signature": ""})

        assert event["signature"] == ""


class TestCorrelationContext:
    """Test request and order id propagation."""

    def test_request_id_generated(self) -> None:
        request_id = set_request_id()

        assert request_id
        assert get_request_id() == request_id

    def test_request_id_added_to_event(self) -> None:
        set_request_id("req-1")

        assert add_request_id(None, "info", {})["request_id"] == "req-1"

    def test_no_request_id_after_clear(self) -> None:
        set_request_id("req-1")
        clear_context()

        assert "request_id" not in add_request_id(None, "info", {})

    def test_bound_order_id_added(self) -> None:
        bind_order_id(42)

        assert add_order_id(None, "info", {})["order_id"] == "42"

    def test_explicit_order_id_wins(self) -> None:
        bind_order_id("bound")

        assert add_order_id(None, "info", {"order_id": "explicit"})["order_id"] == "explicit"


class TestPerformanceLogger:
    """Test operation timing."""

    def test_completed_logged_at_info(self) -> None:
        logger = MagicMock()

        with log_performance(logger, "quote", postal_code="110001"):
            pass

        logger.info.assert_called_once()
        kwargs = logger.info.call_args.kwargs
        assert kwargs["operation"] == "quote"
        assert kwargs["postal_code"] == "110001"
        assert "duration_ms" in kwargs

    def test_failure_logged_and_propagated(self) -> None:
        logger = MagicMock()

        with pytest.raises(ValueError):
            with log_performance(logger, "quote"):
                raise ValueError("boom")

        logger.error.assert_called_once()
        assert logger.error.call_args.kwargs["error_type"] == "ValueError"
