"""Custom exceptions for deployctl."""

from typing import Any


class DeployctlError(Exception):
    """Base exception for all deployctl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(DeployctlError):
    """Configuration-related errors."""

    pass


class ValidationError(DeployctlError):
    """Input validation errors.

    Raised before any remote mutation has happened, so no rollback is needed.
    """

    pass


class RemoteExecutionError(DeployctlError):
    """A command on a local or remote host failed."""

    def __init__(
        self,
        message: str,
        command: str | None = None,
        exit_code: int | None = None,
        stderr: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class StateError(DeployctlError):
    """Deployment state could not be read or written."""

    pass


class LockError(DeployctlError):
    """Deployment lock could not be acquired or released."""

    def __init__(
        self,
        message: str,
        owner: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.owner = owner


class TrafficError(DeployctlError):
    """Reverse-proxy configuration could not be changed."""

    pass


class DeploymentError(DeployctlError):
    """A deployment attempt failed."""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        tag: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.host = host
        self.tag = tag


class DeploymentCancelledError(DeploymentError):
    """A deployment was asked to stop by a sibling failure."""

    pass


class RollbackError(DeployctlError):
    """One or more rollback actions failed.

    Carries every individual failure rather than only the first one.
    """

    def __init__(self, errors: list[str], details: dict[str, Any] | None = None):
        self.errors = list(errors)
        message = f"rollback failed with {len(self.errors)} error(s): " + "; ".join(self.errors)
        super().__init__(message, details)


class TimeoutError(DeployctlError):
    """Operation timeout errors."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds


class HealthCheckTimeoutError(TimeoutError):
    """Health checks did not all pass before the deadline."""

    pass


class DependencyCycleError(ValidationError):
    """Raised when a circular service dependency is detected."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        cycle_str = " -> ".join(cycle)
        super().__init__(f"circular dependency detected: {cycle_str}")
