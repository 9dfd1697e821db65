"""Main CLI entry point for deployctl."""

import sys
from typing import Any

import click
from rich.console import Console

from deployctl import __version__
from deployctl.config import load_config
from deployctl.core.context import DeployctlContext
from deployctl.core.exceptions import ConfigError, DeployctlError
from deployctl.core.output import OutputFormat


CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    console = Console()
    console.print(f"deployctl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-p",
    "--profile",
    metavar="NAME",
    envvar="DEPLOYCTL_PROFILE",
    help="Configuration profile to use",
)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would happen without making changes",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="DEPLOYCTL_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    profile: str | None,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """deployctl - zero-downtime blue/green deployments for compose projects.

    Deploys a compose file to one or more hosts over SSH, gates traffic on
    health checks and rolls back automatically on failure.

    \b
    Examples:
        deployctl deploy up web1 web2
        deployctl deploy rollback web1 web2
        deployctl deploy status web1

    \b
    Configuration:
        ~/.deployctl/config.yaml    User configuration
        ./deployctl.yaml            Project configuration
        DEPLOYCTL_*                 Environment variables
    """
    try:
        config = load_config(config_file, profile)

        ctx.obj = DeployctlContext(
            config=config,
            profile=profile,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            dry_run=dry_run,
            color=not no_color,
        )

        if dry_run and not quiet:
            ctx.obj.output.print_warning("Dry-run mode enabled - no changes will be made")

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def register_commands() -> None:
    """Register all command groups."""
    from deployctl.commands.deploy import deploy

    cli.add_command(deploy)


register_commands()


@cli.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Show current configuration."""
    deployctl_ctx: DeployctlContext = ctx.obj
    profile = deployctl_ctx.profile
    config_data = {
        "profile": deployctl_ctx.profile_name,
        "output_format": deployctl_ctx.output_format.value,
        "dry_run": deployctl_ctx.dry_run,
        "verbose": deployctl_ctx.verbose,
        "hosts": profile.hosts,
        "ssh": {
            "user": profile.ssh.get_user(),
            "port": profile.ssh.port,
            "key_file": profile.ssh.get_key_file(),
            "has_private_key": bool(profile.ssh.get_private_key()),
        },
        "registry": {
            "url": profile.registry.get_url(),
            "username": profile.registry.get_username(),
            "has_password": bool(profile.registry.get_password()),
        },
        "deploy": {
            "compose_file": profile.deploy.compose_file,
            "remote_work_dir": profile.deploy.get_remote_work_dir(),
            "dynamic_config_dir": profile.deploy.dynamic_config_dir,
            "container_engine": profile.deploy.container_engine,
        },
    }
    deployctl_ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except DeployctlError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
