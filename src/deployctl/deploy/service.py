"""Service descriptors derived from compose services."""

from dataclasses import dataclass, field

from deployctl.core.exceptions import ValidationError
from deployctl.deploy.compose import ComposeConfig, ComposeService

PLACEMENT_HOST_LABEL = "deployctl.placement.host"
PLACEMENT_HOSTS_LABEL = "deployctl.placement.hosts"


@dataclass
class PlacementConstraint:
    """Hosts a service is allowed to run on. Empty means every host."""

    host: str | None = None
    hosts: list[str] = field(default_factory=list)

    @classmethod
    def from_labels(cls, labels: dict[str, str]) -> "PlacementConstraint":
        host = (labels.get(PLACEMENT_HOST_LABEL) or "").strip() or None
        hosts = [h.strip() for h in (labels.get(PLACEMENT_HOSTS_LABEL) or "").split(",") if h.strip()]
        return cls(host=host, hosts=hosts)

    @property
    def is_constrained(self) -> bool:
        return bool(self.host or self.hosts)

    def allowed(self) -> list[str]:
        allowed = [self.host] if self.host else []
        allowed += [h for h in self.hosts if h not in allowed]
        return allowed

    def validate(self, service: str, available: list[str]) -> None:
        """Raises ValidationError if the constraint names an unknown host."""
        unknown = [h for h in self.allowed() if h not in available]
        if unknown:
            raise ValidationError(
                f"service {service} is placed on unknown host(s) {', '.join(unknown)}; "
                f"available: {', '.join(available) or 'none'}"
            )

    def targets(self, available: list[str]) -> list[str]:
        if not self.is_constrained:
            return list(available)
        allowed = self.allowed()
        return [h for h in available if h in allowed]


@dataclass
class BuildSpec:
    context: str = "."
    dockerfile: str | None = None
    args: dict[str, str] = field(default_factory=dict)


@dataclass
class Service:
    """A deployable service."""

    name: str
    image: str | None = None
    hostname: str | None = None
    build: BuildSpec | None = None
    depends_on: list[str] = field(default_factory=list)
    placement: PlacementConstraint = field(default_factory=PlacementConstraint)
    env_files: list[str] = field(default_factory=list)
    has_healthcheck: bool = False

    @property
    def has_container(self) -> bool:
        return bool(self.image or self.build)

    def image_for(self, tag: str, registry: str | None = None) -> str:
        """Image reference to run at ``tag``.

        Built services are tagged with the version; prebuilt images are used as
        declared.
        """
        if self.build is None:
            return self.image or ""

        base = _strip_tag(self.image) if self.image else self.name
        if registry and not base.startswith(f"{registry.rstrip('/')}/"):
            base = f"{registry.rstrip('/')}/{base}"
        return f"{base}:{tag}"

    @classmethod
    def from_compose(cls, name: str, spec: ComposeService) -> "Service":
        build = None
        if spec.build is not None:
            build = BuildSpec(
                context=spec.build.context,
                dockerfile=spec.build.dockerfile,
                args=dict(spec.build.args),
            )
        return cls(
            name=name,
            image=spec.image,
            hostname=spec.hostname,
            build=build,
            depends_on=list(spec.depends_on),
            placement=PlacementConstraint.from_labels(spec.labels),
            env_files=list(spec.env_file),
            has_healthcheck=bool(spec.healthcheck) and not (spec.healthcheck or {}).get("disable"),
        )


def _strip_tag(image: str) -> str:
    if "@" in image:
        return image.split("@", 1)[0]
    head, sep, tail = image.rpartition(":")
    if sep and "/" not in tail:
        return head
    return image


def services_from_compose(config: ComposeConfig) -> list[Service]:
    """Service descriptors in compose file order."""
    return [Service.from_compose(name, spec) for name, spec in config.services.items()]
