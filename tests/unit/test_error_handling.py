"""Unit tests for error classification and the retry policy."""

import pytest
from unittest.mock import AsyncMock

from bookflow.error_handling import (
    ConflictError,
    ErrorAnalyzer,
    ErrorCategory,
    ErrorSeverity,
    GenerationBlockedError,
    GenerationErrorCategory,
    InvalidTransitionError,
    ProviderError,
    TransientProviderError,
    ValidationError,
    retry_transient,
)


class TestErrorAnalyzer:
    """Test error categorization."""

    def test_typed_errors(self):
        assert ErrorAnalyzer.categorize_error(GenerationBlockedError("safety")) == ErrorCategory.CONTENT_POLICY
        assert ErrorAnalyzer.categorize_error(TransientProviderError("busy")) == ErrorCategory.TRANSIENT
        assert ErrorAnalyzer.categorize_error(ValidationError("bad")) == ErrorCategory.VALIDATION_ERROR
        assert ErrorAnalyzer.categorize_error(ConflictError("p", "draft")) == ErrorCategory.CONFLICT
        assert ErrorAnalyzer.categorize_error(InvalidTransitionError("draft", "X")) == ErrorCategory.CONFLICT

    def test_message_patterns(self):
        assert ErrorAnalyzer.categorize_error(Exception("503 Service Unavailable")) == ErrorCategory.TRANSIENT
        assert ErrorAnalyzer.categorize_error(Exception("Too many requests")) == ErrorCategory.TRANSIENT
        assert ErrorAnalyzer.categorize_error(Exception("API key not valid")) == ErrorCategory.AUTHENTICATION_ERROR
        assert ErrorAnalyzer.categorize_error(Exception("disk on fire")) == ErrorCategory.PROCESSING_ERROR
        assert ErrorAnalyzer.categorize_error(ValueError("nope")) == ErrorCategory.VALIDATION_ERROR

    def test_severity(self):
        assert ErrorAnalyzer.assess_severity(ErrorCategory.AUTHENTICATION_ERROR) == ErrorSeverity.CRITICAL
        assert ErrorAnalyzer.assess_severity(ErrorCategory.TRANSIENT) == ErrorSeverity.MEDIUM

    def test_unknown_block_reason_rejected(self):
        with pytest.raises(ValueError):
            GenerationBlockedError("weird")


class TestGenerationErrorCategory:
    @pytest.mark.parametrize("message,category", [
        ("Gemini API error: HTTP 503 - overloaded", GenerationErrorCategory.SERVICE_UNAVAILABLE),
        ("quota exceeded", GenerationErrorCategory.RATE_LIMIT),
        ("Image generation returned no image (safety): IMAGE_SAFETY", GenerationErrorCategory.CONTENT_BLOCKED),
        ("Image generation returned no image (empty)", GenerationErrorCategory.NO_IMAGE),
        (str(GenerationBlockedError("empty", "no image generated")), GenerationErrorCategory.NO_IMAGE),
        ("Gemini API error: HTTP 429 - rate limit exceeded", GenerationErrorCategory.RATE_LIMIT),
        ("something else", GenerationErrorCategory.UNKNOWN),
        (None, GenerationErrorCategory.UNKNOWN),
    ])
    def test_from_message(self, message, category):
        assert GenerationErrorCategory.from_message(message) == category


class TestRetryTransient:
    @pytest.mark.asyncio
    async def test_retries_once_then_succeeds(self):
        func = AsyncMock(side_effect=[TransientProviderError("503"), "ok"])
        assert await retry_transient(func, max_retries=1, base_delay=0) == "ok"
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_terminal_error_raised_immediately(self):
        func = AsyncMock(side_effect=ProviderError("HTTP 400"))
        with pytest.raises(ProviderError):
            await retry_transient(func, max_retries=3, base_delay=0)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_passes_arguments(self):
        func = AsyncMock(return_value=3)
        assert await retry_transient(func, 1, 2, base_delay=0) == 3
        func.assert_awaited_once_with(1, 2)
