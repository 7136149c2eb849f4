"""Error taxonomy and retry classification for story and illustration generation."""

import asyncio
import logging
from enum import Enum
from typing import Optional


logger = logging.getLogger(__name__)


class StoryfoxError(Exception):
    """Base class for all pipeline errors."""


class UnparsableResponseError(StoryfoxError):
    """Model output could not be decoded by any strategy."""

    def __init__(self, message: str = "The model response could not be parsed", raw: str = ""):
        super().__init__(message)
        self.raw = raw


class ContentRejectedError(StoryfoxError):
    """The concept was blocked or the story had no usable pages."""


class BackendError(StoryfoxError):
    """Base class for failures of a single text or image backend call."""


class NoCredentialError(StoryfoxError):
    """A backend was selected but no API key is configured for it."""

    def __init__(self, provider: str):
        super().__init__(f"No API key configured for {provider}")
        self.provider = provider


class BackendHTTPError(BackendError):
    """A backend answered with a non-success HTTP status."""

    def __init__(self, status: int, message: str = ""):
        super().__init__(f"HTTP {status}: {message}" if message else f"HTTP {status}")
        self.status = status
        self.message = message


class RateLimitedError(BackendHTTPError):
    """HTTP 429, optionally with a Retry-After hint in seconds."""

    def __init__(self, retry_after: Optional[float] = None, message: str = "rate limited"):
        super().__init__(429, message)
        self.retry_after = retry_after


class BackendTimeoutError(BackendError):
    """The backend did not answer in time."""


class GeneratorUnavailableError(BackendError):
    """The backend cannot be reached or is not running."""


class NoImageProducedError(BackendError):
    """The backend answered but returned no decodable image."""


class ErrorCategory(str, Enum):
    """Error category types."""
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONTENT_POLICY = "content_policy"
    NO_IMAGE = "no_image"
    PROCESSING_ERROR = "processing_error"


class ErrorAnalyzer:
    """Classifies errors to decide how a variant chain proceeds."""

    ERROR_PATTERNS = {
        ErrorCategory.RATE_LIMIT: [
            'rate limit', 'too many requests', 'requests per minute',
            'rate_limit_exceeded', 'throttled', '429'
        ],
        ErrorCategory.TIMEOUT: [
            'timeout', 'timed out', 'read timeout', 'request timeout'
        ],
        ErrorCategory.NETWORK_ERROR: [
            'connection error', 'network error', 'connection refused',
            'connection reset', 'dns', 'socket', 'unreachable'
        ],
        ErrorCategory.AUTHENTICATION_ERROR: [
            'unauthorized', 'invalid api key', 'no api key', 'access denied',
            'invalid token', '401'
        ],
        ErrorCategory.QUOTA_EXCEEDED: [
            'quota', 'usage limit', 'billing', 'insufficient funds', 'credits'
        ],
        ErrorCategory.CONTENT_POLICY: [
            'content policy', 'safety filter', 'safety system', 'inappropriate content',
            'moderation', 'guardrail', 'unsafe', 'nsfw'
        ],
    }

    @classmethod
    def categorize_error(cls, error: BaseException, error_message: Optional[str] = None) -> ErrorCategory:
        """Categorize an error based on its type and message."""
        if isinstance(error, RateLimitedError):
            return ErrorCategory.RATE_LIMIT
        if isinstance(error, (BackendTimeoutError, asyncio.TimeoutError)):
            return ErrorCategory.TIMEOUT
        if isinstance(error, NoCredentialError):
            return ErrorCategory.AUTHENTICATION_ERROR
        if isinstance(error, GeneratorUnavailableError):
            return ErrorCategory.NETWORK_ERROR
        if isinstance(error, NoImageProducedError):
            return ErrorCategory.NO_IMAGE

        error_text = (error_message or str(error)).lower()
        error_type = type(error).__name__.lower()

        for category, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if pattern in error_text or pattern in error_type:
                    return category

        if isinstance(error, BackendHTTPError):
            if error.status in (401, 403):
                return ErrorCategory.AUTHENTICATION_ERROR
            if error.status in (400, 422):
                return ErrorCategory.CONTENT_POLICY
        if isinstance(error, (ConnectionError, OSError)):
            return ErrorCategory.NETWORK_ERROR
        return ErrorCategory.PROCESSING_ERROR

    @classmethod
    def is_fatal(cls, error: BaseException) -> bool:
        """Errors no retry can fix; they end the whole run."""
        return isinstance(error, NoCredentialError)

    @classmethod
    def should_retry_same_variant(cls, error: BaseException) -> bool:
        """Transient failures and guardrail rejections retry the same prompt.

        Authentication and quota problems move straight to the next variant.
        """
        category = cls.categorize_error(error)
        return category in (
            ErrorCategory.CONTENT_POLICY,
            ErrorCategory.RATE_LIMIT,
            ErrorCategory.TIMEOUT,
            ErrorCategory.NETWORK_ERROR,
            ErrorCategory.NO_IMAGE,
            ErrorCategory.PROCESSING_ERROR,
        )

    @classmethod
    def retry_delay(cls, error: BaseException, base_delay: float, max_delay: float = 10.0) -> float:
        """Delay before the next attempt, honouring Retry-After up to a cap."""
        if isinstance(error, RateLimitedError) and error.retry_after:
            return min(max_delay, max(base_delay, error.retry_after))
        return base_delay


def user_facing_message(error: BaseException) -> str:
    """Short message shown next to a missing illustration."""
    category = ErrorAnalyzer.categorize_error(error)
    if isinstance(error, NoCredentialError):
        return f"Add an API key for {error.provider} in settings and try again."
    if category is ErrorCategory.RATE_LIMIT:
        return "The image service is busy right now. Please try again in a moment."
    if category is ErrorCategory.TIMEOUT:
        return "The image service took too long to respond."
    if category is ErrorCategory.NETWORK_ERROR:
        return "The image generator could not be reached."
    if category is ErrorCategory.CONTENT_POLICY:
        return "The image service declined this prompt. Try editing the page text."
    if category is ErrorCategory.QUOTA_EXCEEDED:
        return "The image service quota has been used up."
    if category is ErrorCategory.NO_IMAGE:
        return "The image service returned no picture."
    message = str(error).strip()
    return message or "Illustration failed."
