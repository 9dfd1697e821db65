"""Multi-host deployment coordination."""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta

from deployctl.clients.containers import ContainerManager
from deployctl.config import RegistryConfig
from deployctl.core.async_utils import run_blocking
from deployctl.core.exceptions import (
    DeploymentCancelledError,
    DeploymentError,
    LockError,
    ValidationError,
)
from deployctl.core.logging import get_logger
from deployctl.deploy.compose import ComposeConfig, Project
from deployctl.deploy.deployer import Deployer, build_and_push
from deployctl.deploy.graph import ServiceGraph
from deployctl.deploy.models import DeploymentState
from deployctl.deploy.service import Service, services_from_compose
from deployctl.deploy.state import DEFAULT_LOCK_TTL

logger = get_logger(__name__)


def plan_deployment(
    config: ComposeConfig,
    hosts: list[str],
    services: list[str] | None = None,
) -> list[tuple[Service, list[str]]]:
    """Services in deployment order, each with the hosts it goes to.

    Args:
        config: Parsed compose file
        hosts: Hosts supplied for the deployment
        services: Only plan these services; None plans all of them

    Raises:
        ValidationError: if a placement names an unknown host, a service
            or dependency is unknown
        DependencyCycleError: if services depend on each other in a cycle
    """
    declared = services_from_compose(config)
    for service in declared:
        service.placement.validate(service.name, hosts)

    by_name = {s.name: s for s in declared}
    if services is not None:
        unknown = [name for name in services if name not in by_name]
        if unknown:
            raise ValidationError(f"unknown service(s): {', '.join(unknown)}")

    order = ServiceGraph(declared).deployment_order()
    if services is not None:
        order = [name for name in order if name in services]
    return [(by_name[name], by_name[name].placement.targets(hosts)) for name in order]


class DeploymentCoordinator:
    """Fans a deployment out over several hosts.

    Services are deployed one after another in dependency order. The hosts of
    a single service are deployed in parallel.
    """

    def __init__(
        self,
        deployers: dict[str, Deployer],
        project: Project,
        builder: ContainerManager | None = None,
        registry: RegistryConfig | None = None,
        owner: str | None = None,
        lock_ttl: timedelta = DEFAULT_LOCK_TTL,
    ):
        """Initialize the coordinator.

        Args:
            deployers: One deployer per host, keyed by host name
            project: Compose project being deployed
            builder: Local container engine for building images
            registry: Registry images are pushed to
            owner: Lock owner id; generated when not given
            lock_ttl: Lease length of locks taken for rollbacks
        """
        if not deployers:
            raise ValidationError("at least one host is required")
        self.deployers = deployers
        self.project = project
        self.builder = builder
        self.registry = registry
        self.owner = owner or f"deployctl-{uuid.uuid4().hex[:8]}"
        self.lock_ttl = lock_ttl
        for deployer in deployers.values():
            deployer.owner = self.owner

    @property
    def hosts(self) -> list[str]:
        return list(self.deployers)

    def plan(
        self,
        config: ComposeConfig,
        services: list[str] | None = None,
    ) -> list[tuple[Service, list[str]]]:
        return plan_deployment(config, self.hosts, services)

    async def deploy_compose(
        self,
        config: ComposeConfig,
        version: str,
        build: bool = True,
        services: list[str] | None = None,
    ) -> dict[str, DeploymentState]:
        """Deploy the services of a compose file at ``version``.

        A failed host stops the rollout. Hosts that already succeeded are left
        as they are; rolling them back is a separate operation.

        Returns:
            Final state per host

        Raises:
            ValidationError: if the plan is invalid (no host was touched)
            DeploymentError: the first host failure
        """
        plan = self.plan(config, services)
        logger.info(
            f"deploying {version} to {', '.join(self.hosts)}: "
            + " -> ".join(service.name for service, _ in plan)
        )

        if build:
            if self.builder is None:
                raise ValidationError("no local container engine configured for building")
            await build_and_push(
                self.builder, self.project, [s for s, _ in plan], version, self.registry
            )

        states: dict[str, DeploymentState] = {}
        for service, hosts in plan:
            if not service.has_container:
                logger.debug(f"service {service.name} has no image or build, skipping")
                continue
            if not hosts:
                logger.warning(f"service {service.name} has no target hosts, skipping")
                continue
            results = await self._deploy_service(service.name, version, hosts)
            states.update(results)
        return states

    async def _deploy_service(
        self,
        service: str,
        version: str,
        hosts: list[str],
    ) -> dict[str, DeploymentState]:
        cancel_event = asyncio.Event()

        async def deploy_host(host: str) -> DeploymentState:
            try:
                return await self.deployers[host].deploy_service(service, version, cancel_event)
            except Exception:
                cancel_event.set()
                raise

        logger.info(f"deploying {service} to {', '.join(hosts)}")
        results = await asyncio.gather(*(deploy_host(h) for h in hosts), return_exceptions=True)

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for host, result in zip(hosts, results):
                if isinstance(result, BaseException):
                    logger.error(f"[{host}] {service} failed: {result}")
            # Report the failure that triggered cancellation, not a cancelled sibling
            causes = [e for e in errors if not isinstance(e, DeploymentCancelledError)]
            first = (causes or errors)[0]
            if isinstance(first, DeploymentError):
                raise first
            raise DeploymentError(f"deployment of {service} failed: {first}", tag=version) from first

        return dict(zip(hosts, results))

    async def _acquire_locks(self) -> list[str]:
        """Lock every host or none.

        Returns:
            Hosts whose lock was acquired

        Raises:
            LockError: if any host could not be locked
        """
        acquired: list[str] = []
        for host, deployer in self.deployers.items():
            try:
                await run_blocking(deployer.state.acquire_lock, self.owner, self.lock_ttl)
            except Exception as e:
                logger.error(f"[{host}] failed to acquire lock: {e}")
                await self._release_locks(acquired)
                raise LockError(f"failed to lock {host}: {e}") from e
            acquired.append(host)
        return acquired

    async def _release_locks(self, hosts: list[str]) -> list[str]:
        errors: list[str] = []
        for host in hosts:
            try:
                await run_blocking(self.deployers[host].state.release_lock, self.owner)
            except Exception as e:
                logger.error(f"[{host}] failed to release lock: {e}")
                errors.append(f"{host}: {e}")
        return errors

    async def _with_locks(
        self,
        operation: str,
        action: Callable[[Deployer], Awaitable[DeploymentState]],
    ) -> dict[str, DeploymentState]:
        acquired = await self._acquire_locks()
        try:
            hosts = list(self.deployers)
            results = await asyncio.gather(
                *(action(self.deployers[h]) for h in hosts), return_exceptions=True
            )
            errors = [
                f"{host}: {result}"
                for host, result in zip(hosts, results)
                if isinstance(result, BaseException)
            ]
            if errors:
                raise DeploymentError(f"{operation} failed on {len(errors)} host(s): " + "; ".join(errors))
            return dict(zip(hosts, results))
        finally:
            release_errors = await self._release_locks(acquired)
            if release_errors:
                logger.warning(f"locks left behind: {'; '.join(release_errors)}")

    async def rollback(self, config: ComposeConfig | None = None) -> dict[str, DeploymentState]:
        """Roll every host back to its previous version.

        Raises:
            LockError: if a host could not be locked (nothing was changed)
            DeploymentError: with the failures of every host that failed
        """
        if config is not None:
            self.plan(config)
        logger.info(f"rolling back {', '.join(self.hosts)}")
        return await self._with_locks("rollback", lambda d: d.rollback_compose())

    async def rollback_service(self, service: str) -> dict[str, DeploymentState]:
        """Roll one service back on every host."""
        logger.info(f"rolling back {service} on {', '.join(self.hosts)}")
        return await self._with_locks(
            f"rollback of {service}", lambda d: d.rollback_service(service)
        )

    async def prune(self) -> dict[str, list[str]]:
        """Remove stale proxy configs on every host."""
        hosts = list(self.deployers)
        results = await asyncio.gather(*(self.deployers[h].prune() for h in hosts))
        return dict(zip(hosts, results))
