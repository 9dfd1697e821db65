"""Tests for multi-host deployment coordination."""

import pytest
import yaml

from conftest import FakeContainers
from deployctl.core.exceptions import (
    DependencyCycleError,
    DeploymentError,
    LockError,
    RemoteExecutionError,
    ValidationError,
)
from deployctl.deploy.compose import ComposeConfig, Project
from deployctl.deploy.coordinator import DeploymentCoordinator, plan_deployment

HOSTS = ["a", "b", "c"]


@pytest.fixture
def fleet(project, make_deployer):
    """Three hosts, each with its own fake container engine."""
    containers = {host: FakeContainers() for host in HOSTS}
    deployers = {
        host: make_deployer(project, host=host, containers=containers[host])
        for host in HOSTS
    }
    coordinator = DeploymentCoordinator(deployers, project, owner="coordinator-1")
    return coordinator, containers


def compose(services: dict) -> ComposeConfig:
    return ComposeConfig.model_validate({"services": services})


class TestPlan:
    """Tests for placement and ordering."""

    def test_dependencies_come_first(self):
        config = compose({
            "web": {"image": "web", "depends_on": ["api"]},
            "api": {"image": "api", "depends_on": ["db"]},
            "db": {"image": "postgres"},
        })
        plan = plan_deployment(config, HOSTS)
        assert [s.name for s, _ in plan] == ["db", "api", "web"]

    def test_unconstrained_service_goes_everywhere(self):
        plan = plan_deployment(compose({"web": {"image": "web"}}), HOSTS)
        assert plan[0][1] == HOSTS

    def test_placement_labels(self):
        config = compose({
            "db": {"image": "postgres", "labels": {"deployctl.placement.host": "b"}},
            "web": {"image": "web", "labels": ["deployctl.placement.hosts=a,c"]},
        })
        plan = dict((s.name, hosts) for s, hosts in plan_deployment(config, HOSTS))
        assert plan == {"db": ["b"], "web": ["a", "c"]}

    def test_unknown_placement_host(self):
        config = compose({
            "db": {"image": "postgres", "labels": {"deployctl.placement.host": "ghost"}},
        })
        with pytest.raises(ValidationError, match="ghost"):
            plan_deployment(config, HOSTS)

    def test_cycle_detected(self):
        config = compose({
            "a": {"image": "a", "depends_on": ["b"]},
            "b": {"image": "b", "depends_on": ["a"]},
        })
        with pytest.raises(DependencyCycleError):
            plan_deployment(config, HOSTS)

    def test_service_filter(self):
        config = compose({
            "web": {"image": "web", "depends_on": ["db"]},
            "db": {"image": "postgres"},
        })
        plan = plan_deployment(config, HOSTS, ["web"])
        assert [s.name for s, _ in plan] == ["web"]

    def test_unknown_service_filter(self):
        with pytest.raises(ValidationError, match="unknown service"):
            plan_deployment(compose({"web": {"image": "web"}}), HOSTS, ["cache"])

    def test_requires_a_host(self, project):
        with pytest.raises(ValidationError):
            DeploymentCoordinator({}, project)


class TestDeployCompose:
    """Tests for DeploymentCoordinator.deploy_compose."""

    @pytest.mark.asyncio
    async def test_deploys_every_host(self, fleet, project):
        coordinator, containers = fleet

        states = await coordinator.deploy_compose(project.config, "v1", build=False)

        assert set(states) == set(HOSTS)
        for host in HOSTS:
            assert set(containers[host].running) == {"db-v1", "web-v1"}
            assert states[host].tag == "v1"

    @pytest.mark.asyncio
    async def test_services_deployed_in_dependency_order(self, fleet, project):
        coordinator, containers = fleet

        await coordinator.deploy_compose(project.config, "v1", build=False)

        for host in HOSTS:
            assert containers[host].started() == [["db"], ["web"]]

    @pytest.mark.asyncio
    async def test_invalid_placement_touches_no_host(self, tmp_path, fleet, project_dir):
        coordinator, containers = fleet
        raw = yaml.safe_load((project_dir / "docker-compose.yml").read_text())
        raw["services"]["db"]["labels"] = {"deployctl.placement.host": "ghost"}
        (project_dir / "docker-compose.yml").write_text(yaml.safe_dump(raw))
        config = Project.load(project_dir / "docker-compose.yml").config

        with pytest.raises(ValidationError):
            await coordinator.deploy_compose(config, "v1", build=False)

        assert all(c.calls == [] for c in containers.values())
        assert not (tmp_path / "hosts" / "a" / "work").exists()

    @pytest.mark.asyncio
    async def test_host_failure_stops_rollout(self, fleet, project):
        coordinator, containers = fleet
        containers["b"].fail_up = True

        with pytest.raises(DeploymentError) as exc_info:
            await coordinator.deploy_compose(project.config, "v1", build=False)

        assert exc_info.value.host == "b"
        # web depends on db, so it never starts anywhere
        for host in HOSTS:
            assert ["web"] not in containers[host].started()

    @pytest.mark.asyncio
    async def test_successful_hosts_are_left_alone(self, fleet, project):
        coordinator, containers = fleet
        await coordinator.deploy_compose(project.config, "v1", build=False)
        containers["c"].healthy = False

        with pytest.raises(DeploymentError):
            await coordinator.deploy_compose(project.config, "v2", build=False, services=["db"])

        assert coordinator.deployers["c"].state.load().compose.services["db"].tag == "v1"
        # a and b either finished or were cancelled and rolled back
        for host in ("a", "b"):
            tag = coordinator.deployers[host].state.load().compose.services["db"].tag
            assert tag in ("v1", "v2")

    @pytest.mark.asyncio
    async def test_build_requires_builder(self, fleet, project):
        coordinator, _ = fleet
        with pytest.raises(ValidationError, match="container engine"):
            await coordinator.deploy_compose(project.config, "v1", build=True)

    @pytest.mark.asyncio
    async def test_build_once_before_deploying(self, project, make_deployer):
        builder = FakeContainers()
        deployers = {host: make_deployer(project, host=host) for host in ("a", "b")}
        coordinator = DeploymentCoordinator(deployers, project, builder=builder)

        await coordinator.deploy_compose(project.config, "v1", build=True)

        assert builder.calls == [("build", "registry.example.com/shop/web:v1")]


class TestCoordinatedRollback:
    """Tests for locked multi-host rollback."""

    @pytest.mark.asyncio
    async def test_rollback_all_hosts(self, fleet, project):
        coordinator, containers = fleet
        await coordinator.deploy_compose(project.config, "v1", build=False)
        await coordinator.deploy_compose(project.config, "v2", build=False)

        states = await coordinator.rollback(project.config)

        for host in HOSTS:
            assert states[host].tag == "v1"
            assert set(containers[host].running) == {"db-v1", "web-v1"}
            assert coordinator.deployers[host].state.load().lock is None

    @pytest.mark.asyncio
    async def test_lock_acquisition_is_all_or_nothing(self, fleet, project):
        coordinator, containers = fleet
        await coordinator.deploy_compose(project.config, "v1", build=False)
        await coordinator.deploy_compose(project.config, "v2", build=False)
        coordinator.deployers["c"].state.acquire_lock("someone-else")
        before = {host: len(c.calls) for host, c in containers.items()}

        with pytest.raises(LockError):
            await coordinator.rollback()

        assert coordinator.deployers["a"].state.load().lock is None
        assert coordinator.deployers["b"].state.load().lock is None
        assert coordinator.deployers["c"].state.load().lock.owner == "someone-else"
        assert {host: len(c.calls) for host, c in containers.items()} == before
        for host in HOSTS:
            assert coordinator.deployers[host].state.load().tag == "v2"

    @pytest.mark.asyncio
    async def test_failed_rollback_still_releases_locks(self, fleet, project):
        coordinator, _ = fleet
        await coordinator.deploy_compose(project.config, "v1", build=False)

        # Nothing to roll back to on any host
        with pytest.raises(DeploymentError, match="3 host"):
            await coordinator.rollback()

        for host in HOSTS:
            assert coordinator.deployers[host].state.load().lock is None

    @pytest.mark.asyncio
    async def test_rollback_service(self, fleet, project):
        coordinator, containers = fleet
        await coordinator.deploy_compose(project.config, "v1", build=False)
        await coordinator.deploy_compose(project.config, "v2", build=False, services=["web"])

        states = await coordinator.rollback_service("web")

        for host in HOSTS:
            assert states[host].compose.services["web"].tag == "v1"
            assert "web-v1" in containers[host].running


class TestPrune:
    """Tests for DeploymentCoordinator.prune."""

    @pytest.mark.asyncio
    async def test_prune_every_host(self, tmp_path, fleet, project):
        coordinator, _ = fleet
        await coordinator.deploy_compose(project.config, "v1", build=False)
        (tmp_path / "hosts" / "a" / "dynamic" / "web-v0.yml").write_text("http: {}\n")

        removed = await coordinator.prune()

        assert removed == {"a": ["web-v0.yml"], "b": [], "c": []}


SHARED_TEMPLATE = {
    "http": {
        "routers": {
            "api": {"rule": "Host(`shop.example.com`) && PathPrefix(`/api`)", "service": "api"},
            "web": {"rule": "Host(`shop.example.com`)", "service": "frontend"},
        },
        "services": {
            "api": {"loadBalancer": {"servers": [{"url": "http://api:8000"}]}},
            "frontend": {"loadBalancer": {"servers": [{"url": "http://web:8080"}]}},
        },
    }
}


class SelectiveFailure(FakeContainers):
    """Fails ``up`` for one named service."""

    def __init__(self):
        super().__init__()
        self.failing: str | None = None

    def up(self, project: str, compose_files: list[str], services: list[str]) -> None:
        if self.failing in services:
            raise RemoteExecutionError(f"{self.failing} failed to start", exit_code=1)
        super().up(project, compose_files, services)


@pytest.fixture
def shared_project(tmp_path) -> Project:
    """Two services routed by a single proxy template."""
    app = tmp_path / "shared"
    (app / "traefik").mkdir(parents=True)
    (app / "docker-compose.yml").write_text(yaml.safe_dump({
        "name": "shop",
        "services": {
            "api": {"image": "shop/api:1"},
            "web": {"image": "shop/web:1", "depends_on": ["api"]},
        },
    }))
    (app / "traefik" / "dynamic.yml").write_text(yaml.safe_dump(SHARED_TEMPLATE))
    return Project.load(app / "docker-compose.yml", "traefik")


def live_configs(tmp_path, host: str) -> dict[str, dict]:
    dynamic = tmp_path / "hosts" / host / "dynamic"
    return {p.name: yaml.safe_load(p.read_text()) for p in sorted(dynamic.iterdir())}


def backends(document: dict) -> dict[str, str]:
    return {
        name: service["loadBalancer"]["servers"][0]["url"]
        for name, service in document["http"]["services"].items()
    }


class TestSharedProxyTemplate:
    """Tests for rollouts where one template routes to several services."""

    @pytest.mark.asyncio
    async def test_every_service_routed_on_every_host(self, tmp_path, shared_project, make_deployer):
        containers = {host: FakeContainers() for host in ("a", "b")}
        deployers = {
            host: make_deployer(shared_project, host=host, containers=containers[host])
            for host in ("a", "b")
        }
        coordinator = DeploymentCoordinator(deployers, shared_project)

        states = await coordinator.deploy_compose(shared_project.config, "v1", build=False)

        for host in ("a", "b"):
            configs = live_configs(tmp_path, host)
            assert list(configs) == ["dynamic-v1.yml"]
            live = configs["dynamic-v1.yml"]
            assert backends(live) == {"api-v1": "http://api-v1:8000", "frontend-v1": "http://web-v1:8080"}
            assert set(live["http"]["routers"]) == {"api-v1", "web-v1"}
            assert set(states[host].proxy.configs) == {"dynamic-v1.yml"}
            assert set(states[host].compose.services) == {"api", "web"}
            assert set(containers[host].running) == {"api-v1", "web-v1"}

    @pytest.mark.asyncio
    async def test_upgrade_moves_every_service(self, tmp_path, shared_project, make_deployer):
        coordinator = DeploymentCoordinator({"a": make_deployer(shared_project, host="a")}, shared_project)
        await coordinator.deploy_compose(shared_project.config, "v1", build=False)

        states = await coordinator.deploy_compose(shared_project.config, "v2", build=False)

        configs = live_configs(tmp_path, "a")
        assert list(configs) == ["dynamic-v2.yml"]
        assert backends(configs["dynamic-v2.yml"]) == {
            "api-v2": "http://api-v2:8000",
            "frontend-v2": "http://web-v2:8080",
        }
        assert set(states["a"].proxy.configs) == {"dynamic-v2.yml"}

    @pytest.mark.asyncio
    async def test_failed_service_keeps_its_previous_route(self, tmp_path, shared_project, make_deployer):
        containers = SelectiveFailure()
        deployer = make_deployer(shared_project, host="a", containers=containers)
        coordinator = DeploymentCoordinator({"a": deployer}, shared_project)
        await coordinator.deploy_compose(shared_project.config, "v1", build=False)
        containers.failing = "web"

        with pytest.raises(DeploymentError):
            await coordinator.deploy_compose(shared_project.config, "v2", build=False)

        configs = live_configs(tmp_path, "a")
        assert list(configs) == ["dynamic-v2.yml"]
        # api moved on, web still serves the version that is running
        assert backends(configs["dynamic-v2.yml"]) == {
            "api-v2": "http://api-v2:8000",
            "frontend-v1": "http://web-v1:8080",
        }
        assert set(containers.running) == {"api-v2", "web-v1"}
        state = deployer.state.load()
        assert state.compose.services["api"].tag == "v2"
        assert state.compose.services["web"].tag == "v1"
