"""
Error hierarchy.

Shared exception types used by the orchestrator, job scheduler and allocator.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(PipelineError):
    """Invalid or missing configuration."""


class ValidationError(PipelineError):
    """Malformed input to a step or job. Never retried."""


class ProviderError(PipelineError):
    """A single generation call failed."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        scene_id: Optional[str] = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        if scene_id is not None:
            details["scene_id"] = str(scene_id)
        super().__init__(message, details=details, **kwargs)
        self.provider = provider
        self.scene_id = scene_id


class CriticalIntegrityError(PipelineError):
    """A hard precondition failed. Aborts the whole workflow."""

    def __init__(self, message: str, step_id: Optional[str] = None, **kwargs: Any):
        details = kwargs.pop("details", {})
        if step_id:
            details["step_id"] = step_id
        super().__init__(message, details=details, **kwargs)
        self.step_id = step_id


class CancellationError(PipelineError):
    """Raised inside job processing once the job has been cancelled."""

    def __init__(self, job_id: str, reason: str = "Cancelled by user"):
        super().__init__(reason, details={"job_id": job_id})
        self.job_id = job_id
        self.reason = reason


class RetryableError(PipelineError):
    """Transient failure that may succeed on retry."""


class RateLimitError(RetryableError):
    """Rate-limit class failure. Retried with a longer backoff."""


class PersistenceError(PipelineError):
    """Store or repository operation failed after bounded retries."""


class WorkflowNotFoundError(PipelineError):
    """No workflow exists for the given id."""


class JobNotFoundError(PipelineError):
    """No job exists for the given id."""


class JobTimeoutError(PipelineError):
    """A job poll loop ran out of attempts before the job finished."""


RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests", "xx000")


def is_rate_limit_error(error: BaseException) -> bool:
    """
    Check whether an exception belongs to the rate-limit class.

    Args:
        error: Exception to classify

    Returns:
        True for RateLimitError or messages carrying a rate-limit signature
    """
    if isinstance(error, RateLimitError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)
