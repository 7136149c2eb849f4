"""Unit tests for error classification."""

import asyncio

import pytest

from storyfox.error_handling import (
    BackendHTTPError,
    BackendTimeoutError,
    ErrorAnalyzer,
    ErrorCategory,
    GeneratorUnavailableError,
    NoCredentialError,
    NoImageProducedError,
    RateLimitedError,
    StoryfoxError,
    UnparsableResponseError,
    user_facing_message,
)


class TestErrorEnums:
    """Test error enumeration classes."""

    def test_error_category_enum(self):
        """Test error category values."""
        assert ErrorCategory.RATE_LIMIT == "rate_limit"
        assert ErrorCategory.CONTENT_POLICY == "content_policy"
        assert ErrorCategory.NO_IMAGE == "no_image"


class TestErrorAnalyzer:
    """Test the ErrorAnalyzer class."""

    @pytest.mark.parametrize("error, category", [
        (RateLimitedError(), ErrorCategory.RATE_LIMIT),
        (BackendTimeoutError("slow"), ErrorCategory.TIMEOUT),
        (asyncio.TimeoutError(), ErrorCategory.TIMEOUT),
        (NoCredentialError("openai"), ErrorCategory.AUTHENTICATION_ERROR),
        (GeneratorUnavailableError("down"), ErrorCategory.NETWORK_ERROR),
        (NoImageProducedError("empty"), ErrorCategory.NO_IMAGE),
        (BackendHTTPError(500, "blocked by safety filter"), ErrorCategory.CONTENT_POLICY),
        (BackendHTTPError(400, "bad prompt"), ErrorCategory.CONTENT_POLICY),
        (BackendHTTPError(403), ErrorCategory.AUTHENTICATION_ERROR),
        (BackendHTTPError(402, "insufficient credits"), ErrorCategory.QUOTA_EXCEEDED),
        (BackendHTTPError(500, "internal"), ErrorCategory.PROCESSING_ERROR),
        (ConnectionResetError("peer"), ErrorCategory.NETWORK_ERROR),
        (Exception("Connection refused"), ErrorCategory.NETWORK_ERROR),
        (ValueError("odd"), ErrorCategory.PROCESSING_ERROR),
    ])
    def test_categorize_error(self, error, category):
        """Test categorization by type first, then by message."""
        assert ErrorAnalyzer.categorize_error(error) is category

    def test_explicit_message_overrides(self):
        """Test an explicit message is used for pattern matching."""
        assert ErrorAnalyzer.categorize_error(Exception("x"), "Request timed out") is ErrorCategory.TIMEOUT

    @pytest.mark.parametrize("error, retry", [
        (RateLimitedError(), True),
        (BackendTimeoutError("slow"), True),
        (GeneratorUnavailableError("down"), True),
        (NoImageProducedError("empty"), True),
        (BackendHTTPError(500, "internal"), True),
        (BackendHTTPError(400, "content policy"), True),
        (BackendHTTPError(401), False),
        (BackendHTTPError(402, "quota exceeded"), False),
    ])
    def test_should_retry_same_variant(self, error, retry):
        """Test transient errors and guardrail rejections retry; auth and quota errors advance."""
        assert ErrorAnalyzer.should_retry_same_variant(error) is retry

    def test_retry_delay(self):
        """Test Retry-After is honoured and capped."""
        assert ErrorAnalyzer.retry_delay(BackendTimeoutError("x"), 0.45) == 0.45
        assert ErrorAnalyzer.retry_delay(RateLimitedError(retry_after=3), 0.45) == 3
        assert ErrorAnalyzer.retry_delay(RateLimitedError(retry_after=120), 0.45) == 10.0
        assert ErrorAnalyzer.retry_delay(RateLimitedError(retry_after=0.1), 0.45) == 0.45

    def test_is_fatal(self):
        """Test only credential errors end the run."""
        assert ErrorAnalyzer.is_fatal(NoCredentialError("openai"))
        assert not ErrorAnalyzer.is_fatal(BackendHTTPError(500))
        assert not ErrorAnalyzer.is_fatal(ValueError("x"))


class TestErrorTypes:
    """Test the exception hierarchy."""

    def test_hierarchy_and_messages(self):
        """Test messages and base classes."""
        assert str(BackendHTTPError(500, "boom")) == "HTTP 500: boom"
        assert str(BackendHTTPError(502)) == "HTTP 502"
        assert RateLimitedError(retry_after=2).status == 429
        assert str(NoCredentialError("together")) == "No API key configured for together"
        assert isinstance(UnparsableResponseError(raw="x"), StoryfoxError)
        assert UnparsableResponseError(raw="x").raw == "x"


class TestUserFacingMessage:
    """Test messages shown for missing illustrations."""

    @pytest.mark.parametrize("error, expected", [
        (NoCredentialError("openai"), "Add an API key for openai in settings and try again."),
        (RateLimitedError(), "The image service is busy right now. Please try again in a moment."),
        (BackendTimeoutError("x"), "The image service took too long to respond."),
        (GeneratorUnavailableError("x"), "The image generator could not be reached."),
        (BackendHTTPError(400, "content policy"), "The image service declined this prompt. Try editing the page text."),
        (NoImageProducedError("x"), "The image service returned no picture."),
        (ValueError("odd failure"), "odd failure"),
        (ValueError(""), "Illustration failed."),
    ])
    def test_messages(self, error, expected):
        """Test one message per category."""
        assert user_facing_message(error) == expected
