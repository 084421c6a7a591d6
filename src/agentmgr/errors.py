"""
Error types for the agentmgr upgrade engine.

This module defines the AgentMgrError base class and subclasses for
domain-specific errors. Code below the pipeline raises these; the pipeline
converts anything escaping a step into a failed step result, and the upgrade
service maps acquisition errors onto a failed result without touching files.
"""

from __future__ import annotations

from typing import Any


class AgentMgrError(Exception):
    """
    Base exception class for agentmgr errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "lock_busy", "sync_failed", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, process ids).

    Example:
        >>> raise AgentMgrError(
        ...     error_code="invalid_argument",
        ...     message="Component name must not contain path separators",
        ...     details={"name": "../etc"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an AgentMgrError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(AgentMgrError):
    """Error raised when an operation receives invalid input arguments."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class FailedPreconditionError(AgentMgrError):
    """
    Error raised when a precondition for the operation is not met.

    Used when a target directory is missing, an incoming tree is not on
    disk, or a configuration file cannot be edited safely.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class UnavailableError(AgentMgrError):
    """
    Error raised when an external tool or service is unavailable.

    This covers a missing supervisor binary, a command that timed out, or an
    unreachable health endpoint.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class InternalError(AgentMgrError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


class LockBusyError(AgentMgrError):
    """
    Error raised when an upgrade target is locked by a live process.

    The owning process id, when known, is available as ``owner_pid`` and in
    ``details``. The caller may retry later; no state has been changed.
    """

    def __init__(
        self,
        message: str,
        owner_pid: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a LockBusyError."""
        merged = dict(details or {})
        if owner_pid is not None:
            merged.setdefault("owner_pid", owner_pid)
        super().__init__(error_code="lock_busy", message=message, details=merged)
        self.owner_pid = owner_pid


class SyncError(AgentMgrError):
    """Error raised when an I/O failure interrupts a directory sync."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a SyncError."""
        super().__init__(error_code="sync_failed", message=message, details=details)


class MergeUnavailableError(AgentMgrError):
    """
    Error raised when a three-way merge could not be attempted.

    Smart sync treats this exactly like a merge that produced conflicts.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MergeUnavailableError."""
        super().__init__(
            error_code="merge_unavailable", message=message, details=details
        )


class CommandError(AgentMgrError):
    """Error raised when an external command exits unsuccessfully."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a CommandError."""
        super().__init__(error_code="command_failed", message=message, details=details)
