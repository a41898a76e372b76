"""Tests for logging configuration."""

from seedflow.core.logging import (
    add_correlation_ids,
    configure_logging,
    get_logger,
    request_id_ctx,
    run_context,
    run_id_ctx,
)


def test_get_logger_returns_bound_logger():
    """get_logger should return a structlog logger."""
    configure_logging()
    logger = get_logger("test")

    assert logger is not None
    assert hasattr(logger, "info")
    assert hasattr(logger, "error")


def test_request_id_context_variable():
    """request_id_ctx should store and retrieve values."""
    assert request_id_ctx.get() is None

    token = request_id_ctx.set("test-id-123")
    assert request_id_ctx.get() == "test-id-123"

    request_id_ctx.reset(token)
    assert request_id_ctx.get() is None


def test_configure_logging_completes():
    """configure_logging should complete without error."""
    configure_logging()  # Should not raise


def test_run_context_binds_run_id():
    """run_context should expose the run id only inside the block."""
    with run_context("run-42"):
        assert run_id_ctx.get() == "run-42"

    assert run_id_ctx.get() is None


def test_correlation_ids_added_to_events():
    """add_correlation_ids should copy context ids into the event."""
    token = request_id_ctx.set("req-1")
    try:
        with run_context("run-7"):
            event = add_correlation_ids(None, "info", {"event": "x"})
    finally:
        request_id_ctx.reset(token)

    assert event == {"event": "x", "request_id": "req-1", "run_id": "run-7"}


def test_explicit_run_id_wins():
    """An explicit run_id on the event is not overwritten by the context."""
    with run_context("run-7"):
        event = add_correlation_ids(None, "info", {"event": "x", "run_id": "other"})

    assert event["run_id"] == "other"
