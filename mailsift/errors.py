"""Domain exceptions for pipeline, provider, and persistence diagnostics.

Taxonomy:
- `SizeOverflowError`: backend rejected the input as too long.
- `TransientProviderError`: network/backend instability or incomplete output.
- `SchemaViolationError`: a parsed document lacks a required field.
- `RetryExhaustedError`: a retry ladder was consumed without success.
- `PersistenceError`: a durable artifact could not be written.
"""

from __future__ import annotations

from pathlib import Path


class PipelineStageError(RuntimeError):
    """Raised when a specific pipeline stage fails."""

    def __init__(
        self,
        *,
        stage: str,
        detail: str,
        hint: str | None = None,
    ) -> None:
        """Initialize a stage-scoped pipeline error."""

        super().__init__(detail)
        self.stage = stage
        self.detail = detail
        self.hint = hint


class ProviderError(RuntimeError):
    """Raised when a generation backend request fails or returns unusable output."""

    def __init__(
        self,
        message: str,
        *,
        failure_kind: str = "unknown",
        status_code: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        """Initialize provider error metadata for classification and diagnostics."""

        super().__init__(message)
        self.failure_kind = failure_kind
        self.status_code = status_code
        self.provider_code = provider_code


class SizeOverflowError(ProviderError):
    """Raised when the backend rejects a request because the input is too long."""


class TransientProviderError(ProviderError):
    """Raised for failures that a delayed retry of the same request may fix."""


class SchemaViolationError(RuntimeError):
    """Raised when a parsed response lacks required top-level fields."""

    def __init__(self, missing_fields: tuple[str, ...]) -> None:
        joined = ", ".join(missing_fields)
        super().__init__(f"Response is missing required field(s): {joined}")
        self.missing_fields = missing_fields


class RetryExhaustedError(RuntimeError):
    """Raised when every attempt of a bounded retry ladder has failed."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error

    @property
    def failure_kind(self) -> str:
        """Return the failure kind of the last underlying error, when known."""

        return getattr(self.last_error, "failure_kind", "exhausted")


class PersistenceError(RuntimeError):
    """Raised when a durable pipeline artifact cannot be written or removed."""

    def __init__(self, message: str, *, path: Path) -> None:
        super().__init__(message)
        self.path = path
