"""Custom exceptions and error taxonomy for conductor.

Every failure raised by the pipeline carries an ``ErrorCategory`` that
decides how it is handled:

- TEMPORARY: network blips, provider 5xx. Retried by the gateway.
- RATE_LIMIT: retried with the provider-supplied delay, then surfaced.
- USER: bad credentials, malformed request. Never retried.
- SYSTEM: provider or store unavailable. Triggers a degraded reply.
- PERMANENT: unparseable output, invalid generated plan. Surfaced.
- GUARDRAIL: unknown capability or exceeded budget. Always visible.
"""

import logging
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """How a failure should be handled by callers."""

    TEMPORARY = "temporary"
    RATE_LIMIT = "rate_limit"
    USER = "user"
    SYSTEM = "system"
    PERMANENT = "permanent"
    GUARDRAIL = "guardrail"


# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "ModelUnavailableError": "The language model is temporarily unavailable. Please try again in a moment.",
    "ModelTimeoutError": "The language model took too long to respond. Please try again.",
    "ModelRateLimitError": "Too many requests to the language model. Please try again later.",
    "ModelResponseError": "The language model returned a response that could not be understood.",
    "ModelRequestError": "The request to the language model was rejected.",
    "ProviderNotFoundError": "The requested capability is not available.",
    "ActionNotAllowedError": "The requested action is not allowed for this capability.",
    "StepTimeoutError": "A step took too long to complete.",
    "StepExecutionError": "A step failed to execute.",
    "PlanValidationError": "The generated plan was rejected by validation.",
    "PlanGenerationError": "A plan could not be generated for this request.",
    "MemoryStoreError": "Memory is temporarily unavailable.",
    "StoreError": "Storage is temporarily unavailable. Please try again.",
    "ValidationError": "The provided input is invalid. Please check and try again.",
    "CircuitBreakerOpen": "A service dependency is temporarily unavailable. Please try again in a moment.",
    "ValueError": "The provided value is invalid.",
    "TimeoutError": "The request took too long to complete. Please try again.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Walks the exception's MRO so subclasses inherit the message of the
    nearest mapped ancestor.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class ConductorException(Exception):
    """Base exception for all conductor errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
        suggestions: list[str] | None = None,
        retry_after: float | None = None,
    ) -> None:
        """Initialize conductor exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            category: Handling category for the failure.
            status_code: HTTP status code.
            details: Additional error details.
            suggestions: Hints shown to the user alongside the message.
            retry_after: Seconds the caller should wait before retrying.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.status_code = status_code
        self.details = details or {}
        self.suggestions = suggestions or []
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        """Whether the gateway retry policy should try again."""
        return self.category in (ErrorCategory.TEMPORARY, ErrorCategory.RATE_LIMIT)

    def user_message(self) -> str:
        """Message with suggestions appended as a bullet list."""
        if not self.suggestions:
            return self.message
        lines = [self.message, "", "Suggestions:"]
        lines.extend(f"  - {s}" for s in self.suggestions)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API error payloads and logs."""
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.details:
            data["details"] = self.details
        if self.suggestions:
            data["suggestions"] = self.suggestions
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


class ValidationError(ConductorException):
    """Input validation error (400)."""

    def __init__(
        self, message: str, field: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Optional field name that failed validation.
            details: Additional error details.
        """
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            code="VALIDATION_FAILED",
            category=ErrorCategory.USER,
            status_code=400,
            details=error_details,
        )


# ---------------------------------------------------------------------------
# Model gateway errors
# ---------------------------------------------------------------------------


class ModelUnavailableError(ConductorException):
    """Model provider cannot be reached or is returning 5xx (503)."""

    def __init__(
        self,
        provider: str,
        message: str = "Model provider unavailable",
        temporary: bool = True,
    ) -> None:
        """Initialize model unavailable error.

        Args:
            provider: Name of the model provider.
            message: Error message.
            temporary: True for transient outages, False when the provider
                is disabled or unreachable for the rest of the request.
        """
        super().__init__(
            message=f"{provider}: {message}",
            code="MODEL_UNAVAILABLE",
            category=ErrorCategory.TEMPORARY if temporary else ErrorCategory.SYSTEM,
            status_code=503,
            details={"provider": provider},
            suggestions=["Check your network connection", "Try again in a moment"],
        )


class ModelTimeoutError(ConductorException):
    """Model call exceeded its deadline (504)."""

    def __init__(self, provider: str, timeout: float | None = None) -> None:
        """Initialize model timeout error.

        Args:
            provider: Name of the model provider.
            timeout: The deadline that was exceeded, in seconds.
        """
        message = f"{provider}: request timed out"
        if timeout is not None:
            message = f"{provider}: request timed out after {timeout:.1f}s"
        super().__init__(
            message=message,
            code="MODEL_TIMEOUT",
            category=ErrorCategory.TEMPORARY,
            status_code=504,
            details={"provider": provider, "timeout": timeout},
        )


class ModelRateLimitError(ConductorException):
    """Model provider rejected the call for rate limiting (429)."""

    def __init__(self, provider: str, retry_after: float | None = None) -> None:
        """Initialize model rate limit error.

        Args:
            provider: Name of the model provider.
            retry_after: Provider-supplied wait hint in seconds.
        """
        wait = int(retry_after) if retry_after else 60
        super().__init__(
            message=f"{provider}: rate limit exceeded",
            code="MODEL_RATE_LIMIT",
            category=ErrorCategory.RATE_LIMIT,
            status_code=429,
            details={"provider": provider},
            suggestions=[
                f"Wait {wait}s before retrying",
                "Check your API quota",
                "Consider upgrading your plan",
            ],
            retry_after=retry_after,
        )


class ModelResponseError(ConductorException):
    """Model output could not be parsed (502)."""

    def __init__(self, message: str, raw: str | None = None) -> None:
        """Initialize model response error.

        Args:
            message: What was wrong with the response.
            raw: Truncated raw output for debugging.
        """
        super().__init__(
            message=message,
            code="MODEL_PARSE_ERROR",
            category=ErrorCategory.PERMANENT,
            status_code=502,
            details={"raw": raw[:500] if raw else None},
        )


class ModelRequestError(ConductorException):
    """Model provider rejected the request itself (bad key, bad input)."""

    def __init__(self, provider: str, message: str, status_code: int = 400) -> None:
        """Initialize model request error.

        Args:
            provider: Name of the model provider.
            message: Error message.
            status_code: HTTP status the provider returned.
        """
        super().__init__(
            message=f"{provider}: {message}",
            code="MODEL_REQUEST_REJECTED",
            category=ErrorCategory.USER,
            status_code=status_code,
            details={"provider": provider},
            suggestions=["Check your API credentials"] if status_code in (401, 403) else [],
        )


# ---------------------------------------------------------------------------
# Capability / step errors
# ---------------------------------------------------------------------------


class ProviderNotFoundError(ConductorException):
    """No capability provider registered under the given name (404)."""

    def __init__(self, provider: str) -> None:
        """Initialize provider not found error.

        Args:
            provider: The requested provider name.
        """
        super().__init__(
            message=f"Capability provider '{provider}' not found",
            code="TOOL_NOT_FOUND",
            category=ErrorCategory.GUARDRAIL,
            status_code=404,
            details={"provider": provider},
        )


class ActionNotAllowedError(ConductorException):
    """Provider exists but does not whitelist the action (400)."""

    def __init__(self, provider: str, action: str) -> None:
        """Initialize action not allowed error.

        Args:
            provider: The provider name.
            action: The rejected action.
        """
        super().__init__(
            message=f"Action '{action}' is not allowed for provider '{provider}'",
            code="TOOL_ACTION_NOT_ALLOWED",
            category=ErrorCategory.GUARDRAIL,
            status_code=400,
            details={"provider": provider, "action": action},
        )


class StepExecutionError(ConductorException):
    """A provider failed while executing a step (500)."""

    def __init__(self, provider: str, action: str, message: str) -> None:
        """Initialize step execution error.

        Args:
            provider: The provider name.
            action: The action being executed.
            message: Error message from the provider.
        """
        super().__init__(
            message=f"{provider}.{action} failed: {message}",
            code="TOOL_EXECUTION_FAILED",
            category=ErrorCategory.PERMANENT,
            status_code=500,
            details={"provider": provider, "action": action},
        )


class StepTimeoutError(ConductorException):
    """A step exceeded its timeout (504)."""

    def __init__(self, provider: str, action: str, timeout: float) -> None:
        """Initialize step timeout error.

        Args:
            provider: The provider name.
            action: The action being executed.
            timeout: Timeout in seconds.
        """
        super().__init__(
            message=f"{provider}.{action} timed out after {timeout:.0f}s",
            code="TOOL_TIMEOUT",
            category=ErrorCategory.TEMPORARY,
            status_code=504,
            details={"provider": provider, "action": action, "timeout": timeout},
        )


# ---------------------------------------------------------------------------
# Plan errors
# ---------------------------------------------------------------------------


class PlanValidationError(ConductorException):
    """Plan rejected by validation or the capability guardrail (422)."""

    def __init__(self, problems: list[str], plan_id: str | None = None) -> None:
        """Initialize plan validation error.

        Args:
            problems: Every problem found in the plan.
            plan_id: ID of the rejected plan, if it has one.
        """
        super().__init__(
            message="Plan validation failed: " + "; ".join(problems),
            code="PLAN_VALIDATION_FAILED",
            category=ErrorCategory.GUARDRAIL,
            status_code=422,
            details={"problems": problems, "plan_id": plan_id},
        )
        self.problems = problems


class PlanGenerationError(ConductorException):
    """The gateway could not produce a usable plan (502)."""

    def __init__(self, intent: str, message: str) -> None:
        """Initialize plan generation error.

        Args:
            intent: Intent key the plan was requested for.
            message: Error message.
        """
        super().__init__(
            message=f"Plan generation failed for {intent}: {message}",
            code="PLAN_GENERATION_FAILED",
            category=ErrorCategory.PERMANENT,
            status_code=502,
            details={"intent": intent},
        )


# ---------------------------------------------------------------------------
# Storage errors
# ---------------------------------------------------------------------------


class StoreError(ConductorException):
    """Durable store operation failed (503)."""

    def __init__(self, message: str, table: str | None = None) -> None:
        """Initialize store error.

        Args:
            message: Error message.
            table: Table the operation targeted.
        """
        super().__init__(
            message=f"Store operation failed: {message}",
            code="STORE_UNAVAILABLE",
            category=ErrorCategory.SYSTEM,
            status_code=503,
            details={"table": table},
        )


class MemoryStoreError(ConductorException):
    """Memory subsystem operation failed (500)."""

    def __init__(self, message: str) -> None:
        """Initialize memory store error.

        Args:
            message: Error message.
        """
        super().__init__(
            message=f"Memory operation failed: {message}",
            code="MEMORY_STORE_FAILED",
            category=ErrorCategory.SYSTEM,
            status_code=500,
        )
