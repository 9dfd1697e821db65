"""Single-host blue/green deployment."""

import asyncio
import time
from collections.abc import Iterable

import httpx

from deployctl.clients.containers import ContainerManager
from deployctl.clients.executor import Executor
from deployctl.clients.remote_fs import RemoteFileSystem
from deployctl.config import DeploySettings, RegistryConfig
from deployctl.core.async_utils import run_blocking
from deployctl.core.exceptions import (
    DeployctlError,
    DeploymentCancelledError,
    DeploymentError,
    LockError,
    RemoteExecutionError,
    RollbackError,
    ValidationError,
)
from deployctl.core.logging import get_logger
from deployctl.core.utils import format_duration
from deployctl.deploy.compose import Project, render_override
from deployctl.deploy.environment import ReleaseStager
from deployctl.deploy.health import HealthChecker
from deployctl.deploy.models import (
    ComposeServiceState,
    DeploymentState,
    DeployPhase,
    ProxyState,
    TransactionLog,
    TransactionStatus,
    container_name,
)
from deployctl.deploy.proxy import parse_config_name
from deployctl.deploy.rollback import RollbackManager
from deployctl.deploy.service import Service, services_from_compose
from deployctl.deploy.state import StateManager
from deployctl.deploy.traffic import TrafficManager

logger = get_logger(__name__)


async def build_and_push(
    builder: ContainerManager,
    project: Project,
    services: list[Service],
    tag: str,
    registry: RegistryConfig | None = None,
) -> list[str]:
    """Build the images of services that have a build section and push them.

    Returns:
        The image references that were built
    """
    registry_url = registry.get_url() if registry else None
    built: list[str] = []
    targets = [s for s in services if s.build is not None]
    if not targets:
        return built

    if registry is not None and registry.has_credentials:
        await run_blocking(
            builder.login, registry_url, registry.get_username(), registry.get_password()
        )

    for service in targets:
        image = service.image_for(tag, registry_url)
        context = project.base_dir / service.build.context
        dockerfile = str(context / service.build.dockerfile) if service.build.dockerfile else None
        await run_blocking(builder.build, image, str(context), dockerfile, service.build.args)
        if registry_url:
            await run_blocking(builder.push, image)
        built.append(image)

    if not registry_url:
        logger.warning("no registry configured, built images were not pushed")
    return built


class Deployer:
    """Runs one deployment attempt at a time against one host.

    Every reversible step registers its compensation before it acts, and any
    failure rolls back what was registered.
    """

    def __init__(
        self,
        host: str,
        project: Project,
        state: StateManager,
        containers: ContainerManager,
        traffic: TrafficManager,
        health: HealthChecker,
        stager: ReleaseStager,
        settings: DeploySettings | None = None,
        registry: RegistryConfig | None = None,
        builder: ContainerManager | None = None,
        owner: str = "deployctl",
    ):
        self.host = host
        self.project = project
        self.state = state
        self.containers = containers
        self.traffic = traffic
        self.health = health
        self.stager = stager
        self.settings = settings or DeploySettings()
        self.registry = registry or RegistryConfig()
        self.builder = builder
        self.owner = owner
        self.phase = DeployPhase.START
        self._services = services_from_compose(project.config)

    @property
    def services(self) -> list[Service]:
        return list(self._services)

    def _select(self, names: Iterable[str] | None) -> list[Service]:
        if names is None:
            return [s for s in self._services if s.has_container]
        wanted = list(names)
        known = {s.name: s for s in self._services}
        unknown = [n for n in wanted if n not in known]
        if unknown:
            raise ValidationError(f"unknown service(s): {', '.join(unknown)}")
        return [known[n] for n in wanted]

    async def _load_state(self) -> DeploymentState:
        return await run_blocking(self.state.load)

    def _enter(self, phase: DeployPhase, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise DeploymentCancelledError(
                f"[{self.host}] deployment cancelled before {phase.value}", host=self.host
            )
        self.phase = phase
        logger.debug(f"[{self.host}] phase: {phase.value}")

    async def _record(
        self,
        services: list[Service],
        action: str,
        status: TransactionStatus,
        tag: str,
        error: str | None = None,
    ) -> None:
        entries = [
            TransactionLog(
                service_name=service.name,
                action=action,
                status=status,
                version=tag,
                error=error,
                metadata={"host": self.host, "phase": self.phase.value},
            )
            for service in services
        ]
        try:
            await run_blocking(self.state.log_transactions, entries)
        except DeployctlError as e:
            logger.warning(f"[{self.host}] failed to record {action} {status.value}: {e}")

    def _check_lock(self, state: DeploymentState) -> None:
        lock = state.lock
        if lock is not None and not lock.is_expired() and lock.owner != self.owner:
            raise LockError(
                f"[{self.host}] host is locked by {lock.owner} until {lock.expires_at.isoformat()}",
                owner=lock.owner,
            )

    def _verify_removed(self, containers: list[str]):
        async def verify() -> None:
            for name in containers:
                if await run_blocking(self.containers.is_running, name):
                    raise RemoteExecutionError(f"[{self.host}] container {name} is still running")

        return verify

    async def deploy_project(
        self,
        tag: str,
        services: Iterable[str] | None = None,
        build: bool = True,
        cancel_event: asyncio.Event | None = None,
        action: str = "deploy",
    ) -> DeploymentState:
        """Deploy the project, or some of its services, at ``tag``.

        Args:
            tag: Version tag to deploy
            services: Limit the deployment to these services
            build: Build and push images first
            cancel_event: Set by a caller to stop at the next phase boundary
            action: Name recorded in the transaction log

        Returns:
            The state persisted on the host

        Raises:
            DeploymentError: on any failure, after rollback ran
        """
        if not tag:
            raise ValidationError("version tag cannot be empty")
        selected = self._select(services)
        scope = None if services is None else [s.name for s in selected]
        registry_url = self.registry.get_url()
        rollback = RollbackManager(
            load_state=self._load_state,
            step_timeout=self.settings.rollback_step_timeout,
        )
        self.phase = DeployPhase.START
        started = time.monotonic()
        logger.info(f"[{self.host}] deploying {', '.join(s.name for s in selected)} at {tag}")

        try:
            self._enter(DeployPhase.BUILD_PUSH, cancel_event)
            if build:
                if self.builder is None:
                    raise ValidationError("no local container engine configured for building")
                if self._is_deployed(await self._load_state(), selected, tag):
                    logger.info(f"[{self.host}] {tag} is already deployed, skipping build")
                else:
                    await build_and_push(self.builder, self.project, selected, tag, self.registry)

            self._enter(DeployPhase.LOAD_STATE, cancel_event)
            current = await self._load_state()
            self._check_lock(current)
            if self._is_deployed(current, selected, tag):
                logger.info(f"[{self.host}] {tag} is already deployed")
                self.phase = DeployPhase.DONE
                return current
            rollback.set_baseline(current)
            await self._record(selected, action, TransactionStatus.STARTED, tag)

            scope_names = [s.name for s in selected]
            previous = self._previous_tag(current, scope)

            # Services already running from this release keep their entries
            release_services = selected + self._sharing_release(current, tag, scope_names)
            shared = len(release_services) > len(selected)

            self._enter(DeployPhase.STAGE_ENVIRONMENT, cancel_event)
            uploads, env_files = self.stager.plan_environment(release_services)
            if not shared:
                rollback.add_step(
                    "remove staged environment",
                    lambda: self.stager.remove_environment(tag, list(uploads)),
                )
            await self.stager.stage_environment(tag, uploads)

            self._enter(DeployPhase.STAGE_FILES, cancel_event)
            if not shared:
                rollback.add_step("remove staged compose files", lambda: self.stager.remove_files(tag))
            override = render_override(release_services, tag, registry_url)
            compose_files = await self.stager.stage_files(tag, env_files, override)

            self._enter(DeployPhase.PULL_IMAGES, cancel_event)
            if self.registry.has_credentials:
                await run_blocking(
                    self.containers.login,
                    registry_url,
                    self.registry.get_username(),
                    self.registry.get_password(),
                )
            images = [img for img in (s.image_for(tag, registry_url) for s in selected) if img]
            await run_blocking(self.containers.pull, images)

            self._enter(DeployPhase.START_CONTAINERS, cancel_event)
            new_containers = [container_name(name, tag) for name in scope_names]
            rollback.add_step(
                "remove new containers",
                lambda: run_blocking(self.containers.down, new_containers),
                verify=self._verify_removed(new_containers),
            )
            await run_blocking(
                self.containers.up, f"{self.project.name}-{tag}", compose_files, scope_names
            )

            self._enter(DeployPhase.HEALTH_GATE, cancel_event)
            checks = [self.health.container_check(name) for name in new_containers]
            await self.health.wait(checks, self.settings.health_timeout)

            self._enter(DeployPhase.SHIFT_TRAFFIC, cancel_event)
            stems = self.traffic.stems if scope is None else self.traffic.stems_for(scope_names)
            stale_configs = self._configs_for(current, stems)
            traffic_state = DeploymentState(
                tag=previous,
                compose=current.compose,
                proxy=ProxyState(tag=previous, configs=stale_configs),
            )
            rollback.add_step(
                "restore proxy configs",
                lambda: self.traffic.restore(traffic_state, tag, stems),
                verify=lambda: self.traffic.wait_healthy(
                    stale_configs, self.settings.traffic_rollback_timeout
                ),
            )
            routes = None if scope is None else self._routes(current, tag, scope_names)
            configs = await self.traffic.deploy(traffic_state, tag, stems, routes)

            self._enter(DeployPhase.TEARDOWN_OLD, cancel_event)
            old_containers = [
                svc.container_name
                for name, svc in current.compose.services.items()
                if (scope is None or name in scope)
                and svc.container_name
                and svc.container_name != container_name(name, tag)
            ]
            await run_blocking(self.containers.down, old_containers)
            if old_containers:
                logger.debug(f"[{self.host}] removed old containers: {', '.join(old_containers)}")

            self._enter(DeployPhase.COMMIT_ENVIRONMENT, cancel_event)
            if previous and previous != tag and self._release_unused(current, previous, scope):
                await self.stager.remove_release(previous)

            self._enter(DeployPhase.PERSIST_STATE, cancel_event)
            new_services = {
                s.name: ComposeServiceState(
                    service_name=s.name,
                    container_name=container_name(s.name, tag),
                    hostname=container_name(s.name, tag),
                    image=s.image_for(tag, registry_url),
                    tag=tag,
                    blue_weight=0,
                    green_weight=100,
                )
                for s in selected
            }
            new_state = await run_blocking(
                self.state.update, new_services, configs, tag, scope, list(stale_configs)
            )

        except Exception as e:
            failed_phase = self.phase
            self.phase = DeployPhase.FAILED
            logger.error(f"[{self.host}] deployment of {tag} failed during {failed_phase.value}: {e}")

            rollback_error: RollbackError | None = None
            try:
                await rollback.rollback()
            except RollbackError as rb:
                rollback_error = rb

            status = TransactionStatus.FAILED if rollback_error else TransactionStatus.ROLLED_BACK
            await self._record(selected, action, status, tag, error=str(e))

            message = f"[{self.host}] deployment of {tag} failed during {failed_phase.value}: {e}"
            if rollback_error is not None:
                message = f"{message}; {rollback_error}"
            error_cls = DeploymentCancelledError if isinstance(e, DeploymentCancelledError) else DeploymentError
            raise error_cls(message, host=self.host, tag=tag) from e

        try:
            removed = await self.traffic.prune(new_state, stems)
            if removed:
                logger.debug(f"[{self.host}] pruned {', '.join(removed)}")
        except DeployctlError as e:
            logger.warning(f"[{self.host}] failed to prune stale proxy configs: {e}")

        self.phase = DeployPhase.DONE
        await self._record(selected, action, TransactionStatus.COMPLETED, tag)
        logger.info(f"[{self.host}] deployed {tag} in {format_duration(time.monotonic() - started)}")
        return new_state

    @staticmethod
    def _is_deployed(state: DeploymentState, selected: list[Service], tag: str) -> bool:
        return bool(selected) and all(
            s.name in state.compose.services and state.compose.services[s.name].tag == tag
            for s in selected
        )

    @staticmethod
    def _previous_tag(state: DeploymentState, scope: list[str] | None) -> str:
        """Tag the deployed services were running before this attempt."""
        if scope is None:
            return state.tag
        tags = {
            state.compose.services[name].tag
            for name in scope
            if name in state.compose.services and state.compose.services[name].tag
        }
        if len(tags) == 1:
            return tags.pop()
        return ""

    def _routes(self, state: DeploymentState, tag: str, scope: list[str]) -> dict[str, str | None]:
        """Version each service receives traffic on once the scoped services move to tag."""
        routes: dict[str, str | None] = {}
        for service in self._services:
            if not service.has_container:
                continue
            if service.name in scope:
                routes[service.name] = tag
            elif service.name in state.compose.services:
                routes[service.name] = state.compose.services[service.name].tag or state.tag or None
            else:
                routes[service.name] = None
        return routes

    def _configs_for(self, state: DeploymentState, stems: list[str]) -> dict[str, dict]:
        configs = {}
        for name, document in state.proxy.configs.items():
            parsed = parse_config_name(name, self.traffic.stems)
            if parsed and parsed[0] in stems:
                configs[name] = document
        return configs

    def _sharing_release(
        self,
        state: DeploymentState,
        tag: str,
        scope: list[str],
    ) -> list[Service]:
        return [
            s for s in self._services
            if s.name not in scope
            and s.name in state.compose.services
            and state.compose.services[s.name].tag == tag
        ]

    @staticmethod
    def _release_unused(state: DeploymentState, tag: str, scope: list[str] | None) -> bool:
        if scope is None:
            return True
        return not any(
            svc.tag == tag for name, svc in state.compose.services.items() if name not in scope
        )

    async def deploy_service(
        self,
        service: str,
        tag: str,
        cancel_event: asyncio.Event | None = None,
    ) -> DeploymentState:
        """Deploy one service at ``tag`` from images that already exist."""
        return await self.deploy_project(tag, [service], build=False, cancel_event=cancel_event)

    async def rollback_compose(self) -> DeploymentState:
        """Redeploy the version that was live before the current one.

        Raises:
            DeploymentError: if there is no earlier version or the redeploy fails
        """
        previous = await run_blocking(self.state.previous_version)
        if not previous:
            raise DeploymentError(f"[{self.host}] no previous version to roll back to", host=self.host)
        logger.info(f"[{self.host}] rolling back to {previous}")
        return await self.deploy_project(previous, build=False, action="rollback")

    async def rollback_service(self, service: str) -> DeploymentState:
        """Redeploy the version of one service that was live before the current one."""
        self._select([service])
        previous = await run_blocking(self.state.previous_version, [service])
        if not previous:
            raise DeploymentError(
                f"[{self.host}] no previous version of {service} to roll back to", host=self.host
            )
        logger.info(f"[{self.host}] rolling back {service} to {previous}")
        return await self.deploy_project(previous, [service], build=False, action="rollback")

    async def prune(self) -> list[str]:
        """Delete proxy configs left behind by interrupted deployments."""
        state = await self._load_state()
        self._check_lock(state)
        return await self.traffic.prune(state)


def create_deployer(
    executor: Executor,
    project: Project,
    settings: DeploySettings,
    registry: RegistryConfig | None = None,
    builder: ContainerManager | None = None,
    owner: str = "deployctl",
    http_client: httpx.AsyncClient | None = None,
    verify: bool = True,
) -> Deployer:
    """Wire a Deployer for one host.

    Raises:
        RemoteExecutionError: if verify is set and the host lacks a container engine
    """
    if verify:
        executor.verify()

    fs = RemoteFileSystem(executor)
    work_dir = settings.get_remote_work_dir()
    containers = ContainerManager(executor, settings.container_engine)
    health = HealthChecker(
        interval=settings.health_interval,
        client=http_client,
        inspect=containers.inspect,
    )
    traffic = TrafficManager(
        fs,
        health,
        settings.dynamic_config_dir,
        project.templates,
        health_timeout=settings.traffic_health_timeout,
    )
    return Deployer(
        host=executor.host,
        project=project,
        state=StateManager(fs, work_dir, history_limit=settings.history_limit),
        containers=containers,
        traffic=traffic,
        health=health,
        stager=ReleaseStager(fs, work_dir, project),
        settings=settings,
        registry=registry,
        builder=builder,
        owner=owner,
    )
