"""Click context object for sharing state across commands."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click
from rich.markup import escape

from deployctl.config import DeployctlConfig, ProfileConfig, get_default_config
from deployctl.core.logging import LogLevel, StructuredLogger, setup_logging
from deployctl.core.output import OutputFormat, OutputFormatter

if TYPE_CHECKING:
    from deployctl.clients.executor import Executor


LOCAL_HOSTS = ("local", "localhost")


class DeployctlContext:
    """Shared context object for deployctl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, host executors, and output.
    """

    def __init__(
        self,
        config: DeployctlConfig | None = None,
        profile: str | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool = True,
    ):
        self._config = config or get_default_config()
        self._profile_name = profile or "default"

        # CLI flags win over config
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run or self._config.global_settings.dry_run
        self._color = color

        if verbose >= 2:
            log_level = LogLevel.DEBUG
        elif verbose >= 1:
            log_level = LogLevel.INFO
        elif quiet:
            log_level = LogLevel.ERROR
        else:
            log_level = self._config.global_settings.verbosity

        setup_logging(log_level, rich_output=color)
        self._logger = StructuredLogger("context", profile=self._profile_name)

        self._output = OutputFormatter(
            format=self._output_format,
            color=color,
            quiet=quiet,
        )

        self._executors: dict[str, Executor] = {}

    @property
    def config(self) -> DeployctlConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def profile(self) -> ProfileConfig:
        """Get the current profile configuration."""
        return self._config.get_profile(self._profile_name)

    @property
    def profile_name(self) -> str:
        return self._profile_name

    @property
    def output(self) -> OutputFormatter:
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def dry_run(self) -> bool:
        """Check if dry-run mode is enabled."""
        return self._dry_run

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def color(self) -> bool:
        return self._color

    def executor(self, host: str) -> "Executor":
        """Get or create the executor for a host.

        ``local`` and ``localhost`` run commands on this machine. Other hosts
        are reached over SSH with the profile's settings; a ``user@`` prefix
        overrides the configured user.
        """
        if host not in self._executors:
            from deployctl.clients.executor import LocalExecutor, SSHExecutor

            if host in LOCAL_HOSTS:
                self._executors[host] = LocalExecutor()
            else:
                ssh = self.profile.ssh
                user, _, hostname = host.rpartition("@")
                self._executors[host] = SSHExecutor(
                    hostname=hostname,
                    username=user or ssh.get_user(),
                    port=ssh.port,
                    key_file=ssh.get_key_file(),
                    private_key=ssh.get_private_key(),
                    password=ssh.get_password(),
                    connect_timeout=ssh.connect_timeout,
                )
            self._logger.debug("executor created", host=host)
        return self._executors[host]

    def close(self) -> None:
        """Close every executor opened by this context."""
        for host, executor in self._executors.items():
            executor.close()
            self._logger.debug("executor closed", host=host)
        self._executors.clear()

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for user confirmation.

        In dry-run mode, always returns True without prompting.
        """
        if self._dry_run:
            self._output.print(f"[dim]{escape(f'[dry-run] Would prompt: {message}')}[/dim]")
            return True
        if not self._config.global_settings.confirm_destructive:
            return True
        return self._output.confirm(message, default)

    def log_dry_run(self, action: str, details: dict[str, Any] | None = None) -> None:
        """Log a dry-run action."""
        if self._dry_run:
            msg = f"[dry-run] {action}"
            if details:
                detail_str = ", ".join(f"{k}={v}" for k, v in details.items())
                msg = f"{msg} ({detail_str})"
            self._output.print(f"[dim]{escape(msg)}[/dim]")


# Click decorator for passing context
pass_context = click.make_pass_decorator(DeployctlContext, ensure=True)
