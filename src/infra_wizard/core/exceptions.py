from __future__ import annotations

from typing import Any


class InfraWizardError(Exception):
    """Base exception for all infra-wizard errors.

    Attributes:
        code: Optional machine-readable error code (e.g. ``"NOT_FOUND"``).
        details: Arbitrary key/value context about the error.
        status_code: HTTP status the API layer reports for this error
            (``None`` when the error never reaches a client directly).
    """

    default_status_code: int | None = None

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.status_code = status_code if status_code is not None else self.default_status_code


class ConfigurationError(InfraWizardError): ...


class ValidationError(InfraWizardError):
    """A submission was malformed and was rejected before a workflow existed."""

    default_status_code = 400


class NotFoundError(InfraWizardError):
    """An operation referenced an unknown workflow id."""

    default_status_code = 404


class WorkflowConflictError(InfraWizardError):
    """The requested operation is not allowed in the workflow's current status."""

    default_status_code = 409


# ---------------------------------------------------------------------------
# Process supervision
# ---------------------------------------------------------------------------


class ProcessError(InfraWizardError): ...


class ProcessSpawnError(ProcessError):
    """The executable could not be started (missing binary, permissions)."""


class ProcessExecutionError(ProcessError):
    """The process ran but exited non-zero.

    ``stderr`` keeps the captured error stream so stage logs can preserve the
    underlying message verbatim.
    """

    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        stderr: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code="PROCESS_FAILED", details=details)
        self.exit_code = exit_code
        self.stderr = stderr


class OperationCancelledError(ProcessError): ...


# ---------------------------------------------------------------------------
# Collaborators and cleanup
# ---------------------------------------------------------------------------


class CollaboratorError(InfraWizardError):
    """A cloud API or source host call failed (auth, not-found, rate-limit, network)."""

    default_status_code = 502


class ResourceCleanupError(InfraWizardError):
    """Best-effort teardown failed. Logged, never raised to API callers."""
