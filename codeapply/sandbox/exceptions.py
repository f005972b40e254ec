"""Sandbox and collaborator exceptions.

Exception Hierarchy:
    SandboxError (base)
    ├── SandboxNotFoundError - Id absent from the registry and unreconnectable
    ├── SandboxCreationError - Creation/setup failed after exhausting retries
    ├── SandboxTimeoutError - Operation exceeded its time limit
    ├── SandboxExecutionError - Provider could not run an operation
    ├── SandboxConnectionError - Backend unreachable or returned an error
    └── SandboxConfigurationError - Unknown or misconfigured provider
    MorphApplyError - Targeted edit could not be merged
    CollaboratorError - External service call failed
"""

from __future__ import annotations

from typing import Any


class SandboxError(Exception):
    """
    Base exception for all sandbox-related errors.

    Attributes:
        message: Human-readable error description
        details: Optional dictionary with additional context
        sandbox_id: ID of the affected sandbox (if known)
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        sandbox_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.sandbox_id = sandbox_id

    def __str__(self) -> str:
        base_msg = self.message
        if self.sandbox_id:
            base_msg = f"[Sandbox {self.sandbox_id}] {base_msg}"
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            base_msg = f"{base_msg} ({detail_str})"
        return base_msg

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "sandbox_id": self.sandbox_id,
        }


class SandboxNotFoundError(SandboxError):
    """Raised when a sandbox id is neither registered nor reconnectable.

    Callers must surface this distinctly; another sandbox is never
    substituted for the requested id.
    """


class SandboxCreationError(SandboxError):
    """Raised when sandbox creation fails after all retry attempts.

    Attributes:
        attempts: Number of attempts made
    """

    def __init__(self, message: str, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class SandboxTimeoutError(SandboxError):
    """Raised when an operation exceeds its time limit.

    Attributes:
        timeout_seconds: The limit that was exceeded
    """

    def __init__(self, message: str, timeout_seconds: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds


class SandboxExecutionError(SandboxError):
    """
    Raised when a provider cannot carry out an operation.

    Commands that run and exit non-zero are not errors; they are reported
    through CommandResult.

    Attributes:
        command: The command that failed to execute
    """

    def __init__(self, message: str, command: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.command = command


class SandboxConnectionError(SandboxError):
    """Raised when the sandbox backend is unreachable or answers with an error.

    Attributes:
        status_code: HTTP status returned by the backend, if any
    """

    def __init__(self, message: str, status_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class SandboxConfigurationError(SandboxError):
    """Raised for unknown provider names or missing provider settings."""


class MorphApplyError(Exception):
    """Raised when the fast-apply model cannot merge an edit."""


class CollaboratorError(Exception):
    """Raised when an external collaborator service fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
