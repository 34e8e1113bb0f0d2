"""Tests for Courier structured logging."""

import structlog

from courier.logging import (
    REDACTED,
    add_service_info,
    bind_context,
    clear_context,
    configure_logging,
    delivery_context,
    get_logger,
    redact_secrets,
    unbind_context,
)


class TestConfigureLogging:
    """Tests for logging configuration."""

    def test_configure_with_defaults(self):
        """Should configure with INFO level and JSON format by default."""
        configure_logging()
        logger = get_logger("test")
        logger.info("test message")

    def test_configure_with_text_format(self):
        """Should accept text format for development."""
        configure_logging(level="INFO", format="text")
        logger = get_logger("test")
        logger.info("text format message")

    def test_configure_with_unknown_level(self):
        """Unknown levels fall back to INFO instead of raising."""
        configure_logging(level="CHATTY")
        logger = get_logger("test")
        logger.info("still logs")

    def test_configure_multiple_times(self):
        """Should handle multiple configuration calls."""
        configure_logging(level="INFO")
        configure_logging(level="DEBUG")
        logger = get_logger("test")
        logger.debug("after reconfigure")


class TestGetLogger:
    """Tests for logger creation."""

    def test_get_logger_with_name(self):
        """Should create logger with specified name."""
        assert get_logger("courier.webhooks") is not None

    def test_get_logger_without_name(self):
        """Should create logger without name."""
        assert get_logger() is not None


class TestContextBinding:
    """Tests for context variable binding."""

    def setup_method(self):
        """Clear context before each test."""
        clear_context()

    def teardown_method(self):
        """Clear context after each test."""
        clear_context()

    def test_bind_context(self):
        """Bound values are visible in the contextvars."""
        bind_context(worker=1)
        assert structlog.contextvars.get_contextvars() == {"worker": 1}

    def test_unbind_specific_context(self):
        """Should unbind specific context keys."""
        bind_context(worker=1, temp="value")
        unbind_context("temp")
        assert structlog.contextvars.get_contextvars() == {"worker": 1}

    def test_delivery_context_binds_and_unbinds(self):
        """Delivery identifiers are bound only inside the block."""
        bind_context(worker=2)
        with delivery_context("whk_1", "evt_1", 3):
            context = structlog.contextvars.get_contextvars()
            assert context["endpoint_id"] == "whk_1"
            assert context["payload_id"] == "evt_1"
            assert context["attempt"] == 3
        assert structlog.contextvars.get_contextvars() == {"worker": 2}

    def test_delivery_context_unbinds_on_error(self):
        """Identifiers are removed even when the block raises."""
        try:
            with delivery_context("whk_1", "evt_1", 1):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert "endpoint_id" not in structlog.contextvars.get_contextvars()


class TestLoggerUsage:
    """Tests for logger usage patterns."""

    def test_log_with_kwargs(self):
        """Should accept keyword arguments for structured data."""
        configure_logging()
        logger = get_logger("test")
        logger.info("Delivery succeeded", status_code=200, duration_ms=150)

    def test_log_with_exception(self):
        """Should handle exception logging."""
        configure_logging()
        logger = get_logger("test")

        try:
            raise ValueError("test error")
        except ValueError:
            logger.exception("caught an error")


class TestProcessors:
    """Tests for the Courier event processors."""

    def test_service_info_added(self):
        """Events are stamped with the service name and environment."""
        processor = add_service_info("production")
        event = processor(None, "info", {"event": "Delivery succeeded"})
        assert event["service"] == "courier"
        assert event["env"] == "production"

    def test_service_info_keeps_explicit_values(self):
        """Explicit service or env values are not overwritten."""
        processor = add_service_info("production")
        event = processor(None, "info", {"event": "x", "env": "test"})
        assert event["env"] == "test"

    def test_redacts_top_level_secrets(self):
        """Secret and signature fields are masked."""
        event = redact_secrets(
            None,
            "info",
            {"event": "x", "secret": "a" * 64, "Signature": "sha256=abc", "endpoint_id": "whk_1"},
        )
        assert event["secret"] == REDACTED
        assert event["Signature"] == REDACTED
        assert event["endpoint_id"] == "whk_1"

    def test_redacts_nested_headers(self):
        """Signature headers inside a headers mapping are masked."""
        event = redact_secrets(
            None,
            "info",
            {
                "event": "x",
                "headers": {"X-Webhook-Signature": "sha256=abc", "X-Webhook-Event": "credit.low"},
            },
        )
        assert event["headers"] == {
            "X-Webhook-Signature": REDACTED,
            "X-Webhook-Event": "credit.low",
        }

    def test_configure_with_env(self):
        """configure_logging accepts the deployment environment."""
        configure_logging(level="INFO", env="test")
        get_logger("test").info("configured", secret="hidden")
