"""Dependency ordering of services."""

from collections import defaultdict

from deployctl.core.exceptions import DependencyCycleError, ValidationError
from deployctl.deploy.service import Service

WHITE, GRAY, BLACK = 0, 1, 2


class ServiceGraph:
    """Build and manage the service dependency graph (DAG)."""

    def __init__(self, services: list[Service]):
        """Initialize the dependency graph.

        Args:
            services: services with depends_on fields, in declaration order
        """
        self.services = {s.name: s for s in services}
        self.dependencies: dict[str, list[str]] = defaultdict(list)
        self._build_graph(services)

    def _build_graph(self, services: list[Service]) -> None:
        for service in services:
            # Services without a container spec contribute no edges
            if not service.has_container:
                continue
            for dep in service.depends_on:
                if dep not in self.services:
                    raise ValidationError(
                        f"service '{service.name}' depends on unknown service '{dep}'"
                    )
                if dep not in self.dependencies[service.name]:
                    self.dependencies[service.name].append(dep)

    def deployment_order(self) -> list[str]:
        """Services ordered so every dependency comes before its dependents.

        Raises:
            DependencyCycleError: if the graph has a cycle
        """
        color: dict[str, int] = {name: WHITE for name in self.services}
        path: list[str] = []
        order: list[str] = []

        def visit(node: str) -> None:
            color[node] = GRAY
            path.append(node)
            for dep in self.dependencies.get(node, []):
                if color[dep] == GRAY:
                    cycle_start = path.index(dep)
                    raise DependencyCycleError(path[cycle_start:] + [dep])
                if color[dep] == WHITE:
                    visit(dep)
            path.pop()
            color[node] = BLACK
            order.append(node)

        for name in self.services:
            if color[name] == WHITE:
                visit(name)
        return order

    def validate(self) -> None:
        """Raises DependencyCycleError if a cycle is detected."""
        self.deployment_order()
