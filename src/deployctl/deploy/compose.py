"""Compose file model and the per-release documents generated from it."""

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from deployctl.core.exceptions import ValidationError
from deployctl.deploy.models import container_name
from deployctl.deploy.proxy import load_templates

if TYPE_CHECKING:
    from deployctl.deploy.service import Service


class ComposeBuild(BaseModel):
    """Build section of a compose service."""

    model_config = ConfigDict(extra="allow")

    context: str = "."
    dockerfile: str | None = None
    args: dict[str, str] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def normalize_args(cls, v: Any) -> dict[str, str]:
        if v is None:
            return {}
        if isinstance(v, list):
            return dict(_split_pair(item) for item in v)
        return {str(k): "" if val is None else str(val) for k, val in v.items()}


class ComposeService(BaseModel):
    """The parts of a compose service the deployer cares about."""

    model_config = ConfigDict(extra="allow")

    image: str | None = None
    build: ComposeBuild | None = None
    hostname: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    env_file: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    healthcheck: dict[str, Any] | None = None

    @field_validator("build", mode="before")
    @classmethod
    def normalize_build(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"context": v}
        return v

    @field_validator("depends_on", mode="before")
    @classmethod
    def normalize_depends_on(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, dict):
            return list(v.keys())
        return list(v)

    @field_validator("env_file", mode="before")
    @classmethod
    def normalize_env_file(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        paths = []
        for item in v:
            paths.append(item["path"] if isinstance(item, dict) else item)
        return paths

    @field_validator("labels", mode="before")
    @classmethod
    def normalize_labels(cls, v: Any) -> dict[str, str]:
        if v is None:
            return {}
        if isinstance(v, list):
            return dict(_split_pair(item) for item in v)
        return {str(k): "" if val is None else str(val) for k, val in v.items()}


class ComposeConfig(BaseModel):
    """A compose file."""

    model_config = ConfigDict(extra="allow")

    services: dict[str, ComposeService] = Field(default_factory=dict)

    @field_validator("services", mode="before")
    @classmethod
    def normalize_services(cls, v: Any) -> Any:
        if v is None:
            return {}
        return {name: service or {} for name, service in v.items()}


def _split_pair(item: str) -> tuple[str, str]:
    key, _, value = str(item).partition("=")
    return key.strip(), value.strip()


@dataclass
class Project:
    """A compose file plus the proxy templates deployed alongside it."""

    compose_path: Path
    config: ComposeConfig
    raw: dict[str, Any]
    templates: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.raw.get("name") or self.compose_path.resolve().parent.name)

    @property
    def base_dir(self) -> Path:
        return self.compose_path.parent

    @classmethod
    def load(cls, compose_path: str | Path, proxy_dir: str | Path | None = None) -> "Project":
        """Read a compose file and, optionally, a directory of proxy templates.

        Args:
            compose_path: Path to the compose file
            proxy_dir: Template directory, relative to the compose file if not absolute

        Raises:
            ValidationError: if the compose file is missing or invalid
        """
        path = Path(compose_path)
        if not path.is_file():
            raise ValidationError(f"compose file not found: {path}")
        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ValidationError(f"compose file {path} must be a mapping")

        try:
            config = ComposeConfig.model_validate(raw)
        except ValueError as e:
            raise ValidationError(f"invalid compose file {path}: {e}") from e

        templates: dict[str, dict[str, Any]] = {}
        if proxy_dir is not None:
            proxy_path = Path(proxy_dir)
            if not proxy_path.is_absolute():
                proxy_path = path.parent / proxy_path
            templates = load_templates(proxy_path)

        return cls(compose_path=path, config=config, raw=raw, templates=templates)


def release_compose(raw: dict[str, Any], env_files: dict[str, list[str]]) -> dict[str, Any]:
    """Compose document uploaded for a release.

    Build sections are dropped since hosts only pull, and env files point at
    the staged copies.
    """
    document = copy.deepcopy(raw)
    for name, service in (document.get("services") or {}).items():
        if service is None:
            continue
        service.pop("build", None)
        if env_files.get(name):
            service["env_file"] = list(env_files[name])
        else:
            service.pop("env_file", None)
    return document


def render_override(
    services: list["Service"],
    tag: str,
    registry: str | None = None,
) -> dict[str, Any]:
    """Override file giving each service its tagged container name, hostname and image."""
    overrides: dict[str, Any] = {}
    for service in services:
        name = container_name(service.name, tag)
        overrides[service.name] = {
            "container_name": name,
            "hostname": name,
            "image": service.image_for(tag, registry),
        }
    return {"services": overrides}


def override_filename(tag: str) -> str:
    return f"docker-compose.override.{tag}.yml"
