"""Deployment data models.

These mirror the per-host ledger file. ``to_dict`` produces the exact YAML
layout that is persisted and ``from_dict`` reads it back.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from deployctl.core.exceptions import StateError, ValidationError
from deployctl.core.utils import format_timestamp, parse_timestamp, utc_now

DEFAULT_HISTORY_LIMIT = 100


class TransactionStatus(str, Enum):
    """Transaction log status."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class DeployPhase(str, Enum):
    """Phases of a single-host deployment attempt, in execution order."""

    START = "start"
    BUILD_PUSH = "build_push"
    LOAD_STATE = "load_state"
    STAGE_ENVIRONMENT = "stage_environment"
    STAGE_FILES = "stage_files"
    PULL_IMAGES = "pull_images"
    START_CONTAINERS = "start_containers"
    HEALTH_GATE = "health_gate"
    SHIFT_TRAFFIC = "shift_traffic"
    TEARDOWN_OLD = "teardown_old"
    COMMIT_ENVIRONMENT = "commit_environment"
    PERSIST_STATE = "persist_state"
    DONE = "done"
    FAILED = "failed"


def container_name(service_name: str, tag: str) -> str:
    """Deterministic container name for a service at a version tag."""
    return f"{service_name}-{tag}"


@dataclass
class ComposeServiceState:
    """One running service as recorded in the ledger."""

    service_name: str
    container_name: str
    hostname: str = ""
    image: str = ""
    tag: str = ""
    blue_weight: int = 0
    green_weight: int = 0

    def validate(self) -> None:
        """Check the blue/green weight pair.

        Raises:
            ValidationError: if a weight is out of range or a split does not add up
        """
        for label, weight in (("blue", self.blue_weight), ("green", self.green_weight)):
            if not 0 <= weight <= 100:
                raise ValidationError(
                    f"service {self.service_name}: {label} weight {weight} outside 0-100"
                )
        if self.blue_weight and self.green_weight and self.blue_weight + self.green_weight != 100:
            raise ValidationError(
                f"service {self.service_name}: weights {self.blue_weight}+{self.green_weight} "
                "must sum to 100"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "container_name": self.container_name,
            "hostname": self.hostname,
            "image": self.image,
            "tag": self.tag,
            "blue_weight": self.blue_weight,
            "green_weight": self.green_weight,
        }

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "ComposeServiceState":
        return cls(
            service_name=data.get("service_name") or name,
            container_name=data.get("container_name", ""),
            hostname=data.get("hostname", ""),
            image=data.get("image", ""),
            tag=str(data.get("tag", "") or ""),
            blue_weight=int(data.get("blue_weight", 0) or 0),
            green_weight=int(data.get("green_weight", 0) or 0),
        )


@dataclass
class ComposeState:
    """Running services keyed by logical service name."""

    services: dict[str, ComposeServiceState] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"services": {name: svc.to_dict() for name, svc in self.services.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ComposeState":
        services = (data or {}).get("services") or {}
        return cls(
            services={
                name: ComposeServiceState.from_dict(name, svc or {})
                for name, svc in services.items()
            }
        )


@dataclass
class ProxyState:
    """Live reverse-proxy dynamic configs, keyed by file name."""

    tag: str = ""
    configs: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"tag": self.tag, "configs": copy.deepcopy(self.configs)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProxyState":
        data = data or {}
        return cls(
            tag=str(data.get("tag", "") or ""),
            configs=copy.deepcopy(data.get("configs") or {}),
        )


@dataclass
class DeploymentLock:
    """Advisory lock stored inside a host's ledger."""

    owner: str
    acquired_at: datetime
    expires_at: datetime
    renewable: bool = False

    @classmethod
    def create(cls, owner: str, ttl: timedelta, renewable: bool = False) -> "DeploymentLock":
        now = utc_now()
        return cls(owner=owner, acquired_at=now, expires_at=now + ttl, renewable=renewable)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "acquired_at": format_timestamp(self.acquired_at),
            "expires_at": format_timestamp(self.expires_at),
            "owner": self.owner,
            "renewable": self.renewable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentLock":
        try:
            return cls(
                owner=str(data["owner"]),
                acquired_at=parse_timestamp(data["acquired_at"]),
                expires_at=parse_timestamp(data["expires_at"]),
                renewable=bool(data.get("renewable", False)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"malformed lock record: {e}") from e


@dataclass
class TransactionLog:
    """Append-only audit record of one action on one service."""

    service_name: str
    action: str
    status: TransactionStatus
    version: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: datetime = field(default_factory=utc_now)
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "service_name": self.service_name,
            "action": self.action,
            "status": self.status.value,
            "timestamp": format_timestamp(self.timestamp),
            "version": self.version,
            "metadata": dict(self.metadata),
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionLog":
        try:
            return cls(
                id=str(data.get("id", "")),
                service_name=str(data.get("service_name", "")),
                action=str(data.get("action", "")),
                status=TransactionStatus(data.get("status", "started")),
                timestamp=parse_timestamp(data["timestamp"]),
                version=str(data.get("version", "") or ""),
                error=data.get("error"),
                metadata=dict(data.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"malformed transaction record: {e}") from e


@dataclass
class DeploymentState:
    """Everything a host knows about what is deployed on it.

    Equality covers the tag, the service map and the proxy configs. The lock
    and the history are bookkeeping and do not take part.
    """

    tag: str = ""
    compose: ComposeState = field(default_factory=ComposeState)
    proxy: ProxyState = field(default_factory=ProxyState)
    lock: DeploymentLock | None = field(default=None, compare=False)
    history: list[TransactionLog] = field(default_factory=list, compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.tag and not self.compose.services and not self.proxy.configs

    def validate(self) -> None:
        """Raises ValidationError if any service's weights are invalid."""
        for service in self.compose.services.values():
            service.validate()

    def add_transaction(self, entry: TransactionLog, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        """Append to the history, keeping the last ``limit`` entries."""
        self.history.append(entry)
        if len(self.history) > limit:
            self.history = self.history[-limit:]

    def copy(self) -> "DeploymentState":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tag": self.tag,
            "compose": self.compose.to_dict(),
        }
        if self.lock is not None:
            data["lock"] = self.lock.to_dict()
        data["traefik"] = self.proxy.to_dict()
        data["history"] = [entry.to_dict() for entry in self.history]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentState":
        if not isinstance(data, dict):
            raise StateError("deployment state must be a mapping")
        lock_data = data.get("lock")
        return cls(
            tag=str(data.get("tag", "") or ""),
            compose=ComposeState.from_dict(data.get("compose")),
            proxy=ProxyState.from_dict(data.get("traefik")),
            lock=DeploymentLock.from_dict(lock_data) if lock_data else None,
            history=[TransactionLog.from_dict(entry) for entry in data.get("history") or []],
        )
