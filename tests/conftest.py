"""Pytest fixtures for deployctl tests."""

import os
from pathlib import Path
from typing import Any, Callable, Generator

import pytest
import yaml
from click.testing import CliRunner

from deployctl.clients.executor import LocalExecutor
from deployctl.clients.remote_fs import RemoteFileSystem
from deployctl.config import DeployctlConfig, DeploySettings, ProfileConfig, SSHConfig
from deployctl.core.context import DeployctlContext
from deployctl.core.exceptions import RemoteExecutionError
from deployctl.core.output import OutputFormat
from deployctl.deploy.compose import Project
from deployctl.deploy.deployer import Deployer
from deployctl.deploy.environment import ReleaseStager
from deployctl.deploy.health import HealthChecker
from deployctl.deploy.state import StateManager
from deployctl.deploy.traffic import TrafficManager

COMPOSE = {
    "name": "shop",
    "services": {
        "db": {"image": "postgres:16"},
        "web": {
            "image": "registry.example.com/shop/web:latest",
            "build": {"context": "."},
            "depends_on": ["db"],
            "env_file": ".env.web",
        },
    },
}

WEB_TEMPLATE = {
    "http": {
        "routers": {
            "web": {"rule": "Host(`shop.example.com`)", "service": "web"},
        },
        "services": {
            "web": {"loadBalancer": {"servers": [{"url": "http://web:8080"}]}},
        },
    }
}


class FakeContainers:
    """In-memory stand-in for ContainerManager.

    Containers started by ``up`` take their names from the override file the
    deployer wrote, so the names under test are the real ones.
    """

    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.running: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.fail_up = False
        self.fail_down = False

    def login(self, registry: str, username: str, password: str) -> None:
        self.calls.append(("login", registry, username))

    def build(self, image: str, context: str = ".", dockerfile: str | None = None, args: dict | None = None) -> None:
        self.calls.append(("build", image))

    def push(self, image: str) -> None:
        self.calls.append(("push", image))

    def pull(self, images: list[str]) -> None:
        self.calls.append(("pull", list(images)))

    def up(self, project: str, compose_files: list[str], services: list[str]) -> None:
        self.calls.append(("up", project, list(services)))
        if self.fail_up:
            raise RemoteExecutionError("compose up failed", exit_code=1)
        override = yaml.safe_load(Path(compose_files[-1]).read_text())
        status = "running" if self.healthy else "exited"
        for service in services:
            name = override["services"][service]["container_name"]
            self.running[name] = {"Name": name, "State": {"Status": status}}

    def down(self, containers: list[str]) -> None:
        self.calls.append(("down", list(containers)))
        if self.fail_down:
            raise RemoteExecutionError("rm failed", exit_code=1)
        for name in containers:
            self.running.pop(name, None)

    def inspect(self, container: str) -> dict[str, Any] | None:
        return self.running.get(container)

    def is_running(self, container: str) -> bool:
        info = self.inspect(container)
        return bool(info) and info["State"]["Status"] == "running"

    def started(self) -> list[list[str]]:
        return [call[2] for call in self.calls if call[0] == "up"]


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def mock_config() -> DeployctlConfig:
    """Create a mock configuration."""
    return DeployctlConfig(
        profiles={
            "default": ProfileConfig(
                hosts=["web1", "web2"],
                ssh=SSHConfig(user="deploy"),
                deploy=DeploySettings(),
            )
        }
    )


@pytest.fixture
def mock_context(mock_config: DeployctlConfig) -> DeployctlContext:
    """Create a mock deployctl context."""
    return DeployctlContext(
        config=mock_config,
        profile="default",
        output_format=OutputFormat.TABLE,
        verbose=0,
        quiet=False,
        dry_run=False,
        color=False,
    )


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A compose project with one proxy template and an env file."""
    app = tmp_path / "app"
    (app / "traefik").mkdir(parents=True)
    (app / "docker-compose.yml").write_text(yaml.safe_dump(COMPOSE, sort_keys=False))
    (app / ".env.web").write_text("DATABASE_URL=postgres://db/shop\n")
    (app / "traefik" / "web.yml").write_text(yaml.safe_dump(WEB_TEMPLATE, sort_keys=False))
    return app


@pytest.fixture
def project(project_dir: Path) -> Project:
    return Project.load(project_dir / "docker-compose.yml", "traefik")


@pytest.fixture
def fs() -> RemoteFileSystem:
    """File access on this machine through the shell."""
    return RemoteFileSystem(LocalExecutor())


@pytest.fixture
def fast_settings() -> DeploySettings:
    return DeploySettings(
        health_timeout=0.5,
        traffic_health_timeout=0.5,
        traffic_rollback_timeout=0.5,
        rollback_step_timeout=5,
        health_interval=0.01,
    )


@pytest.fixture
def make_deployer(
    tmp_path: Path,
    fs: RemoteFileSystem,
    fast_settings: DeploySettings,
) -> Callable[..., Deployer]:
    """Build a Deployer whose host lives in ``tmp_path/<host>``."""

    def factory(
        project: Project,
        host: str = "localhost",
        containers: FakeContainers | None = None,
        owner: str = "tester",
    ) -> Deployer:
        root = tmp_path / "hosts" / host
        work_dir = str(root / "work")
        containers = containers or FakeContainers()
        health = HealthChecker(interval=fast_settings.health_interval, inspect=containers.inspect)
        traffic = TrafficManager(
            fs,
            health,
            str(root / "dynamic"),
            project.templates,
            health_timeout=fast_settings.traffic_health_timeout,
        )
        return Deployer(
            host=host,
            project=project,
            state=StateManager(fs, work_dir),
            containers=containers,  # type: ignore[arg-type]
            traffic=traffic,
            health=health,
            stager=ReleaseStager(fs, work_dir, project),
            settings=fast_settings,
            owner=owner,
        )

    return factory


@pytest.fixture(autouse=True)
def clean_env() -> Generator[None, None, None]:
    """Clean environment variables before each test."""
    env_vars = [
        "DEPLOYCTL_SSH_USER",
        "DEPLOYCTL_SSH_KEY_FILE",
        "DEPLOYCTL_SSH_PASSWORD",
        "DEPLOYCTL_REGISTRY",
        "DEPLOYCTL_REGISTRY_USER",
        "DEPLOYCTL_REGISTRY_PASSWORD",
        "DEPLOYCTL_REMOTE_WORK_DIR",
        "DEPLOYCTL_PROFILE",
        "DEPLOYCTL_CONFIG",
        "DEPLOYCTL_CONFIG_DIR",
        "REGISTRY_URL",
        "REGISTRY_USER",
        "REGISTRY_PASSWORD",
        "SSH_PRIVATE_KEY",
    ]

    original = {k: os.environ.get(k) for k in env_vars}

    for k in env_vars:
        os.environ.pop(k, None)

    yield

    for k, v in original.items():
        if v is not None:
            os.environ[k] = v
        else:
            os.environ.pop(k, None)


@pytest.fixture
def temp_config_file(tmp_path: Path) -> str:
    """Create a temporary config file."""
    config_content = """
version: "1"
global:
  output_format: table
profiles:
  default:
    hosts: [web1, web2]
    ssh:
      user: deploy
      port: 2222
    deploy:
      remote_work_dir: /srv/deploy
"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(config_content)
    return str(config_file)
