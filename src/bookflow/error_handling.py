"""Error taxonomy and retry policy for the production workflow."""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error category types."""
    TRANSIENT = "transient"
    CONTENT_POLICY = "content_policy"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    AUTHENTICATION_ERROR = "authentication_error"
    PROCESSING_ERROR = "processing_error"


class WorkflowError(Exception):
    """Base class for workflow errors."""


class ValidationError(WorkflowError):
    """Input rejected before anything was written."""


class NotFoundError(WorkflowError):
    """A referenced project, character or page does not exist."""


class InvalidTransitionError(WorkflowError):
    """The event is not accepted in the project's current status."""

    def __init__(self, status: str, event: str):
        super().__init__(f"Event {event} is not accepted in status {status}")
        self.status = status
        self.event = event


class ConflictError(WorkflowError):
    """Another actor advanced the project between our read and our write."""

    def __init__(self, project_id: str, expected: str):
        super().__init__(f"Project {project_id} is no longer in status {expected}")
        self.project_id = project_id
        self.expected = expected


class ExtractionParseError(WorkflowError):
    """The text model returned something that is not the expected JSON shape."""


class ProviderError(WorkflowError):
    """Terminal failure from an AI provider."""


class TransientProviderError(ProviderError):
    """Provider failure that may succeed on retry (overload, rate limit)."""


class GenerationBlockedError(ProviderError):
    """The image model returned no image, with a specific reason."""

    REASONS = ("blocked", "safety", "recitation", "empty")

    def __init__(self, reason: str, detail: str | None = None):
        if reason not in self.REASONS:
            raise ValueError(f"Unknown block reason: {reason}")
        message = f"Image generation returned no image ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail


class ErrorAnalyzer:
    """Classifies errors by their type and message text."""

    ERROR_PATTERNS = {
        ErrorCategory.TRANSIENT: [
            '503', 'unavailable', 'overloaded', 'rate limit', 'rate_limit',
            '429', 'resource exhausted', 'resource_exhausted', 'too many requests',
        ],
        ErrorCategory.CONTENT_POLICY: [
            'safety', 'blocked', 'recitation', 'content policy',
        ],
        ErrorCategory.AUTHENTICATION_ERROR: [
            'unauthorized', 'invalid api key', 'api key not valid', 'forbidden', '401', '403',
        ],
    }

    @classmethod
    def categorize_error(cls, error: BaseException) -> ErrorCategory:
        """Categorize an error based on its type and message."""
        if isinstance(error, GenerationBlockedError):
            return ErrorCategory.CONTENT_POLICY
        if isinstance(error, TransientProviderError):
            return ErrorCategory.TRANSIENT
        if isinstance(error, (ValidationError, ExtractionParseError)):
            return ErrorCategory.VALIDATION_ERROR
        if isinstance(error, (InvalidTransitionError, ConflictError)):
            return ErrorCategory.CONFLICT

        error_text = str(error).lower()
        for category, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if pattern in error_text:
                    return category

        if isinstance(error, ValueError):
            return ErrorCategory.VALIDATION_ERROR
        return ErrorCategory.PROCESSING_ERROR

    @classmethod
    def is_transient(cls, error: BaseException) -> bool:
        return cls.categorize_error(error) == ErrorCategory.TRANSIENT

    @classmethod
    def assess_severity(cls, error_category: ErrorCategory) -> ErrorSeverity:
        severity_mapping = {
            ErrorCategory.AUTHENTICATION_ERROR: ErrorSeverity.CRITICAL,
            ErrorCategory.CONTENT_POLICY: ErrorSeverity.HIGH,
            ErrorCategory.PROCESSING_ERROR: ErrorSeverity.HIGH,
            ErrorCategory.TRANSIENT: ErrorSeverity.MEDIUM,
            ErrorCategory.VALIDATION_ERROR: ErrorSeverity.LOW,
            ErrorCategory.CONFLICT: ErrorSeverity.LOW,
        }
        return severity_mapping.get(error_category, ErrorSeverity.MEDIUM)


class GenerationErrorCategory(str, Enum):
    """Display category for a stored generation error message."""
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMIT = "rate_limit"
    CONTENT_BLOCKED = "content_blocked"
    NO_IMAGE = "no_image"
    UNKNOWN = "unknown"

    @classmethod
    def from_message(cls, message: str | None) -> "GenerationErrorCategory":
        text = (message or "").lower()
        if any(p in text for p in ('503', 'unavailable', 'overloaded')):
            return cls.SERVICE_UNAVAILABLE
        if any(p in text for p in ('rate limit', 'rate_limit', 'quota', '429')):
            return cls.RATE_LIMIT
        if any(p in text for p in ('safety', 'blocked', 'recitation')):
            return cls.CONTENT_BLOCKED
        if 'no image' in text or '(empty)' in text:
            return cls.NO_IMAGE
        return cls.UNKNOWN


async def retry_transient(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 1,
    base_delay: float = 2.0,
    **kwargs: Any,
) -> T:
    """Await ``func``, retrying only transient failures with exponential backoff."""

    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as error:
            if attempt >= max_retries or not ErrorAnalyzer.is_transient(error):
                raise
            delay = base_delay * (2 ** attempt)
            attempt += 1
            logger.warning(
                f"Transient error in {getattr(func, '__name__', 'call')} "
                f"(retry {attempt}/{max_retries} in {delay:.1f}s): {error}"
            )
            await asyncio.sleep(delay)
