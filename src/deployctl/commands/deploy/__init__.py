"""Deploy command group."""

from datetime import timedelta
from typing import Any

import click

from deployctl.clients.containers import ContainerManager
from deployctl.clients.executor import LocalExecutor
from deployctl.clients.git import current_tag
from deployctl.clients.remote_fs import RemoteFileSystem
from deployctl.core.async_utils import run_sync
from deployctl.core.context import DeployctlContext, pass_context
from deployctl.core.exceptions import DeployctlError
from deployctl.core.utils import format_timestamp
from deployctl.deploy import (
    DeploymentCoordinator,
    DeploymentState,
    Project,
    StateManager,
    create_deployer,
    plan_deployment,
)


def ssh_options(func: Any) -> Any:
    """Options overriding the profile's SSH settings."""
    func = click.option("--ssh-key-env", metavar="VAR", help="Environment variable holding the private key")(func)
    func = click.option("-i", "--identity-file", type=click.Path(), help="SSH private key file")(func)
    func = click.option("--ssh-port", type=int, help="SSH port")(func)
    func = click.option("--ssh-user", help="SSH user")(func)
    return func


def project_options(func: Any) -> Any:
    """Options locating the compose file and the proxy templates."""
    func = click.option("--proxy-dir", type=click.Path(), help="Directory of proxy config templates")(func)
    func = click.option("-f", "--file", "compose_file", type=click.Path(), help="Compose file")(func)
    return func


def _apply_ssh_options(
    ctx: DeployctlContext,
    ssh_user: str | None,
    ssh_port: int | None,
    identity_file: str | None,
    ssh_key_env: str | None,
) -> None:
    updates = {
        "user": ssh_user,
        "port": ssh_port,
        "key_file": identity_file,
        "key_env": ssh_key_env,
    }
    updates = {k: v for k, v in updates.items() if v is not None}
    if updates:
        ctx.profile.ssh = ctx.profile.ssh.model_copy(update=updates)


def _resolve_hosts(ctx: DeployctlContext, hosts: tuple[str, ...]) -> list[str]:
    resolved = list(dict.fromkeys(hosts or ctx.profile.hosts))
    if not resolved:
        raise click.UsageError("no hosts given and none configured in the profile")
    return resolved


def _load_project(ctx: DeployctlContext, compose_file: str | None, proxy_dir: str | None) -> Project:
    settings = ctx.profile.deploy
    return Project.load(compose_file or settings.compose_file, proxy_dir or settings.proxy_templates_dir)


def _coordinator(
    ctx: DeployctlContext,
    hosts: list[str],
    project: Project,
    build: bool = False,
) -> DeploymentCoordinator:
    profile = ctx.profile
    settings = profile.deploy
    builder = None
    if build:
        builder = ContainerManager(LocalExecutor(cwd=project.base_dir), settings.container_engine)

    deployers = {
        host: create_deployer(
            ctx.executor(host),
            project,
            settings,
            registry=profile.registry,
            builder=builder,
        )
        for host in hosts
    }
    return DeploymentCoordinator(
        deployers,
        project,
        builder=builder,
        registry=profile.registry,
        lock_ttl=timedelta(seconds=settings.lock_ttl),
    )


def _summary(states: dict[str, DeploymentState]) -> list[dict[str, Any]]:
    rows = []
    for host, state in states.items():
        for name, svc in state.compose.services.items():
            rows.append({
                "host": host,
                "service": name,
                "container": svc.container_name,
                "image": svc.image,
                "tag": svc.tag or state.tag,
            })
    return rows


@click.group()
@pass_context
def deploy(ctx: DeployctlContext) -> None:
    """Blue/green deployments - up, rollback, status, prune.

    \b
    Examples:
        deployctl deploy up web1 web2
        deployctl deploy up web1 --tag v2 --no-build
        deployctl deploy rollback web1 web2
        deployctl deploy status web1
    """
    pass


@deploy.command("up")
@click.argument("hosts", nargs=-1)
@project_options
@click.option("-t", "--tag", help="Version tag (default: short git commit)")
@click.option("-s", "--service", "services", multiple=True, help="Only deploy these services")
@click.option("--no-build", is_flag=True, help="Skip building and pushing images")
@click.option("--registry", help="Registry images are pushed to and pulled from")
@click.option("--registry-user", help="Registry user")
@click.option("--registry-pass", help="Registry password")
@ssh_options
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def up(
    ctx: DeployctlContext,
    hosts: tuple[str, ...],
    compose_file: str | None,
    proxy_dir: str | None,
    tag: str | None,
    services: tuple[str, ...],
    no_build: bool,
    registry: str | None,
    registry_user: str | None,
    registry_pass: str | None,
    ssh_user: str | None,
    ssh_port: int | None,
    identity_file: str | None,
    ssh_key_env: str | None,
    yes: bool,
) -> None:
    """Deploy a compose project to one or more hosts.

    \b
    Examples:
        deployctl deploy up web1 web2
        deployctl deploy up web1 -f compose.yml --proxy-dir traefik
        deployctl deploy up web1 --service api --tag 1a2b3c4
    """
    try:
        _apply_ssh_options(ctx, ssh_user, ssh_port, identity_file, ssh_key_env)
        updates = {"url": registry, "username": registry_user, "password": registry_pass}
        updates = {k: v for k, v in updates.items() if v is not None}
        if updates:
            ctx.profile.registry = ctx.profile.registry.model_copy(update=updates)

        targets = _resolve_hosts(ctx, hosts)
        project = _load_project(ctx, compose_file, proxy_dir)
        version = tag or current_tag(project.base_dir)
        selected = list(services) or None

        if ctx.dry_run:
            plan = plan_deployment(project.config, targets, selected)
            ctx.log_dry_run("deploy", {"tag": version, "hosts": ",".join(targets)})
            ctx.output.print_data(
                [{"service": s.name, "hosts": h} for s, h in plan],
                headers=["service", "hosts"],
                title="Deployment plan",
            )
            return

        if not yes and not ctx.confirm(f"Deploy {project.name} {version} to {', '.join(targets)}?"):
            ctx.output.print_info("Cancelled")
            return

        coordinator = _coordinator(ctx, targets, project, build=not no_build)
        states = run_sync(
            coordinator.deploy_compose(project.config, version, build=not no_build, services=selected)
        )
        ctx.output.print_data(_summary(states), headers=["host", "service", "container", "image", "tag"])
        ctx.output.print_success(f"Deployed {project.name} {version} to {', '.join(targets)}")

    except DeployctlError as e:
        ctx.output.print_error(f"Deployment failed: {e}")
        raise click.Abort()
    finally:
        ctx.close()


@deploy.command("rollback")
@click.argument("hosts", nargs=-1)
@project_options
@click.option("-s", "--service", help="Only roll back this service")
@ssh_options
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def rollback(
    ctx: DeployctlContext,
    hosts: tuple[str, ...],
    compose_file: str | None,
    proxy_dir: str | None,
    service: str | None,
    ssh_user: str | None,
    ssh_port: int | None,
    identity_file: str | None,
    ssh_key_env: str | None,
    yes: bool,
) -> None:
    """Roll hosts back to the previously deployed version.

    Every host is locked first; if one cannot be locked nothing is changed.

    \b
    Examples:
        deployctl deploy rollback web1 web2
        deployctl deploy rollback web1 --service api
    """
    try:
        _apply_ssh_options(ctx, ssh_user, ssh_port, identity_file, ssh_key_env)
        targets = _resolve_hosts(ctx, hosts)
        target = service or "all services"

        if ctx.dry_run:
            ctx.log_dry_run("rollback", {"service": target, "hosts": ",".join(targets)})
            return

        if not yes and not ctx.confirm(f"Roll back {target} on {', '.join(targets)}?"):
            ctx.output.print_info("Cancelled")
            return

        project = _load_project(ctx, compose_file, proxy_dir)
        coordinator = _coordinator(ctx, targets, project)
        if service:
            states = run_sync(coordinator.rollback_service(service))
        else:
            states = run_sync(coordinator.rollback(project.config))
        ctx.output.print_data(_summary(states), headers=["host", "service", "container", "image", "tag"])
        ctx.output.print_success(f"Rolled back {target} on {', '.join(targets)}")

    except DeployctlError as e:
        ctx.output.print_error(f"Rollback failed: {e}")
        raise click.Abort()
    finally:
        ctx.close()


@deploy.command("status")
@click.argument("hosts", nargs=-1)
@click.option("--history", type=int, default=0, help="Show the last N transactions")
@ssh_options
@pass_context
def status(
    ctx: DeployctlContext,
    hosts: tuple[str, ...],
    history: int,
    ssh_user: str | None,
    ssh_port: int | None,
    identity_file: str | None,
    ssh_key_env: str | None,
) -> None:
    """Show what is deployed on each host.

    \b
    Examples:
        deployctl deploy status web1
        deployctl deploy status web1 web2 --history 10
    """
    try:
        _apply_ssh_options(ctx, ssh_user, ssh_port, identity_file, ssh_key_env)
        settings = ctx.profile.deploy
        states: dict[str, DeploymentState] = {}
        for host in _resolve_hosts(ctx, hosts):
            manager = StateManager(
                RemoteFileSystem(ctx.executor(host)),
                settings.get_remote_work_dir(),
                history_limit=settings.history_limit,
            )
            states[host] = manager.load()

        for host, state in states.items():
            ctx.output.print_header(f"Host: {host}")
            ctx.output.print(f"Tag: {state.tag or '-'}")
            if state.lock is not None:
                expired = " (expired)" if state.lock.is_expired() else ""
                ctx.output.print(
                    f"Lock: {state.lock.owner} until {format_timestamp(state.lock.expires_at)}{expired}"
                )
            if state.proxy.configs:
                ctx.output.print(f"Proxy configs: {', '.join(sorted(state.proxy.configs))}")

            if history and state.history:
                ctx.output.print_data(
                    [entry.to_dict() for entry in state.history[-history:]],
                    headers=["timestamp", "service_name", "action", "status", "version", "error"],
                    title="History",
                )

        ctx.output.print_data(_summary(states), headers=["host", "service", "container", "image", "tag"])

    except DeployctlError as e:
        ctx.output.print_error(f"Failed to get status: {e}")
        raise click.Abort()
    finally:
        ctx.close()


@deploy.command("prune")
@click.argument("hosts", nargs=-1)
@project_options
@ssh_options
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def prune(
    ctx: DeployctlContext,
    hosts: tuple[str, ...],
    compose_file: str | None,
    proxy_dir: str | None,
    ssh_user: str | None,
    ssh_port: int | None,
    identity_file: str | None,
    ssh_key_env: str | None,
    yes: bool,
) -> None:
    """Remove proxy configs left behind by interrupted deployments.

    \b
    Examples:
        deployctl deploy prune web1
    """
    try:
        _apply_ssh_options(ctx, ssh_user, ssh_port, identity_file, ssh_key_env)
        targets = _resolve_hosts(ctx, hosts)

        if ctx.dry_run:
            ctx.log_dry_run("prune", {"hosts": ",".join(targets)})
            return

        if not yes and not ctx.confirm(f"Prune stale proxy configs on {', '.join(targets)}?"):
            ctx.output.print_info("Cancelled")
            return

        project = _load_project(ctx, compose_file, proxy_dir)
        removed = run_sync(_coordinator(ctx, targets, project).prune())
        for host, names in removed.items():
            if names:
                ctx.output.print_success(f"{host}: removed {', '.join(names)}")
            else:
                ctx.output.print_info(f"{host}: nothing to prune")

    except DeployctlError as e:
        ctx.output.print_error(f"Prune failed: {e}")
        raise click.Abort()
    finally:
        ctx.close()

