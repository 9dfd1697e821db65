"""Core utilities and shared components for deployctl."""

# Note: Import context lazily to avoid circular imports
# Use: from deployctl.core.context import DeployctlContext, pass_context
from deployctl.core.exceptions import (
    ConfigError,
    DeployctlError,
    DeploymentError,
    RemoteExecutionError,
    ValidationError,
)
from deployctl.core.output import OutputFormatter, console

__all__ = [
    "ConfigError",
    "DeployctlError",
    "DeploymentError",
    "RemoteExecutionError",
    "ValidationError",
    "OutputFormatter",
    "console",
]
