"""Blue/green deployment orchestration."""

from deployctl.deploy.compose import Project
from deployctl.deploy.coordinator import DeploymentCoordinator, plan_deployment
from deployctl.deploy.deployer import Deployer, build_and_push, create_deployer
from deployctl.deploy.health import HealthChecker
from deployctl.deploy.models import (
    ComposeServiceState,
    DeploymentLock,
    DeploymentState,
    DeployPhase,
    TransactionLog,
    TransactionStatus,
)
from deployctl.deploy.rollback import RollbackManager
from deployctl.deploy.state import StateManager
from deployctl.deploy.traffic import TrafficManager

__all__ = [
    "ComposeServiceState",
    "Deployer",
    "DeploymentCoordinator",
    "DeploymentLock",
    "DeploymentState",
    "DeployPhase",
    "HealthChecker",
    "Project",
    "RollbackManager",
    "StateManager",
    "TrafficManager",
    "TransactionLog",
    "TransactionStatus",
    "build_and_push",
    "create_deployer",
    "plan_deployment",
]
