"""Tests for the error taxonomy and handling helpers."""

import asyncio
import logging

import pytest

from vid2anim.error_handling import (
    ConversionCancelledError,
    ConversionError,
    ConversionInProgressError,
    EngineEnvironmentError,
    EngineError,
    ErrorLevel,
    Vid2AnimError,
    describe_error,
    error_context,
    handle_error,
    safe_cleanup,
)


class TestTaxonomy:
    """Tests for error classes."""

    def test_str_includes_cause(self):
        error = Vid2AnimError("Failed to load", cause=OSError("disk full"))

        assert str(error) == "Failed to load (caused by: disk full)"

    def test_retryable_flags(self):
        assert EngineError("x").retryable
        assert not EngineEnvironmentError("x").retryable
        assert not ConversionCancelledError("x").retryable

    def test_in_progress_default_message(self):
        assert str(ConversionInProgressError()) == "Another conversion is already in progress"

    def test_describe_error(self):
        assert describe_error(EngineEnvironmentError("x")) == "environment"
        assert describe_error(ConversionCancelledError("x")) == "cancelled"
        assert describe_error(ValueError("x")) == "failed"


class TestHandleError:
    """Tests for handle_error and error_context."""

    def test_transforms_and_reraises(self):
        with pytest.raises(EngineError) as exc_info:
            handle_error(ValueError("bad"), "read output", EngineError, context={"file": "out.gif"})

        error = exc_info.value
        assert str(error).startswith("Failed to read output: bad")
        assert error.context["file"] == "out.gif"
        assert error.context["original_error_type"] == "ValueError"

    def test_returns_without_reraise(self, caplog):
        with caplog.at_level(logging.WARNING):
            error = handle_error(
                ValueError("bad"), "stage input", level=ErrorLevel.WARNING, reraise=False
            )

        assert isinstance(error, ConversionError)
        assert "Stage input failed" in caplog.text

    def test_error_context_wraps_foreign_errors(self):
        with pytest.raises(ConversionError):
            with error_context("encode"):
                raise KeyError("frame")

    def test_error_context_passes_own_errors(self):
        with pytest.raises(ConversionCancelledError):
            with error_context("encode"):
                raise ConversionCancelledError("stop")


class TestSafeCleanup:
    """Tests for safe_cleanup."""

    def test_success(self):
        async def ok():
            return None

        assert asyncio.run(safe_cleanup(ok, "delete output")) is True

    def test_failure_is_swallowed(self, caplog):
        async def broken():
            raise FileNotFoundError("output.gif")

        with caplog.at_level(logging.WARNING):
            assert asyncio.run(safe_cleanup(broken, "delete output")) is False
        assert "delete output" in caplog.text
