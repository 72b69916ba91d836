"""Tests for the error taxonomy and sanitization."""

from conductor.core.exceptions import (
    ActionNotAllowedError,
    ConductorException,
    ErrorCategory,
    ModelRateLimitError,
    ModelUnavailableError,
    PlanValidationError,
    ProviderNotFoundError,
    StepTimeoutError,
    ValidationError,
    sanitize_error,
)


class TestErrorCategories:
    """Tests for the category each error carries."""

    def test_guardrail_errors(self) -> None:
        """Test unknown capabilities and rejected plans are guardrail failures."""
        assert ProviderNotFoundError("shell").category == ErrorCategory.GUARDRAIL
        assert ActionNotAllowedError("file", "chmod").category == ErrorCategory.GUARDRAIL
        assert PlanValidationError(["bad"]).category == ErrorCategory.GUARDRAIL

    def test_retryable_follows_category(self) -> None:
        """Test only temporary and rate-limit failures are retryable."""
        assert ModelUnavailableError("litellm").retryable is True
        assert ModelRateLimitError("litellm", retry_after=2.0).retryable is True
        assert StepTimeoutError("file", "read", 30).retryable is True
        assert ModelUnavailableError("litellm", temporary=False).retryable is False
        assert ValidationError("bad input").retryable is False

    def test_unavailable_permanently_is_system(self) -> None:
        """Test a disabled provider is a system failure."""
        error = ModelUnavailableError("gateway", temporary=False)
        assert error.category == ErrorCategory.SYSTEM
        assert error.status_code == 503


class TestConductorException:
    """Tests for ConductorException serialization."""

    def test_to_dict_includes_retry_after(self) -> None:
        """Test rate-limit errors carry the provider's wait hint."""
        data = ModelRateLimitError("anthropic", retry_after=20.0).to_dict()

        assert data["code"] == "MODEL_RATE_LIMIT"
        assert data["category"] == "rate_limit"
        assert data["retryable"] is True
        assert data["retry_after"] == 20.0
        assert data["suggestions"][0] == "Wait 20s before retrying"

    def test_user_message_lists_suggestions(self) -> None:
        """Test suggestions are appended as bullets."""
        error = ConductorException("Broken", "BROKEN", suggestions=["Try again"])
        assert error.user_message() == "Broken\n\nSuggestions:\n  - Try again"

    def test_user_message_without_suggestions(self) -> None:
        """Test plain message when there are no suggestions."""
        assert ConductorException("Broken", "BROKEN").user_message() == "Broken"

    def test_validation_error_records_field(self) -> None:
        """Test the failing field lands in details."""
        error = ValidationError("missing", field="key")
        assert error.details == {"field": "key"}
        assert error.status_code == 400

    def test_plan_validation_error_lists_problems(self) -> None:
        """Test every problem is kept and joined into the message."""
        error = PlanValidationError(["a", "b"], plan_id="p1")
        assert error.problems == ["a", "b"]
        assert error.message == "Plan validation failed: a; b"
        assert error.details["plan_id"] == "p1"


def test_sanitize_error_hides_internal_text() -> None:
    """Test internal messages are replaced by safe ones."""
    error = ProviderNotFoundError("secret-internal-tool")
    assert "secret" not in sanitize_error(error)
    assert sanitize_error(error) == "The requested capability is not available."


def test_sanitize_error_walks_mro() -> None:
    """Test subclasses inherit their parent's safe message."""

    class CustomValueError(ValueError):
        pass

    assert sanitize_error(CustomValueError("x")) == "The provided value is invalid."


def test_sanitize_error_default() -> None:
    """Test unknown exception types get the generic message."""
    assert sanitize_error(RuntimeError("boom")) == "An error occurred. Please try again."
