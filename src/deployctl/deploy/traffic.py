"""Blue/green traffic shifting through reverse-proxy dynamic configs."""

from collections.abc import Iterable
from typing import Any

from deployctl.clients.remote_fs import RemoteFileSystem, join
from deployctl.core.async_utils import run_blocking
from deployctl.core.exceptions import TrafficError, ValidationError
from deployctl.core.logging import get_logger
from deployctl.deploy.health import HealthChecker
from deployctl.deploy.models import DeploymentState
from deployctl.deploy.proxy import (
    config_name,
    dump_document,
    parse_config_name,
    promote_document,
    references_services,
    stage_document,
)

logger = get_logger(__name__)

DEFAULT_HEALTH_TIMEOUT = 10.0


class TrafficManager:
    """Writes tagged copies of proxy templates into the proxy's config directory.

    A deployment stages ``<template>-<tag>-deploy.yml``, waits for its backends
    to pass their health checks, promotes it to ``<template>-<tag>.yml`` and
    deletes the previous version's file.
    """

    def __init__(
        self,
        fs: RemoteFileSystem,
        health: HealthChecker,
        config_dir: str,
        templates: dict[str, dict[str, Any]],
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT,
    ):
        """Initialize the traffic manager.

        Args:
            fs: File access on the proxy host
            health: Checker used to gate promotion
            config_dir: Directory the proxy watches for dynamic configs
            templates: Untagged template documents keyed by template name
            health_timeout: Seconds to wait for staged backends
        """
        self._fs = fs
        self._health = health
        self._config_dir = config_dir
        self._templates = templates
        self._health_timeout = health_timeout
        self._configs: dict[str, dict[str, Any]] = {}

    @property
    def stems(self) -> list[str]:
        return list(self._templates)

    def stems_for(self, services: Iterable[str]) -> list[str]:
        """Templates that route to any of the given services."""
        wanted = set(services)
        return [
            stem for stem, document in self._templates.items()
            if references_services(document, wanted)
        ]

    def _selected(self, stems: Iterable[str] | None) -> list[str]:
        if stems is None:
            return self.stems
        unknown = [s for s in stems if s not in self._templates]
        if unknown:
            raise ValidationError(f"unknown proxy template(s): {', '.join(unknown)}")
        return list(stems)

    def _path(self, name: str) -> str:
        return join(self._config_dir, name)

    async def _write(self, name: str, document: dict[str, Any]) -> None:
        await run_blocking(self._fs.write_text, self._path(name), dump_document(document))

    async def _remove(self, name: str) -> None:
        await run_blocking(self._fs.remove, self._path(name))

    async def _exists(self, name: str) -> bool:
        return await run_blocking(self._fs.exists, self._path(name))

    def dynamic_configs(self) -> dict[str, dict[str, Any]]:
        """Live (promoted) configs written by the last ``deploy``."""
        return dict(self._configs)

    async def deploy(
        self,
        current_state: DeploymentState,
        new_tag: str,
        stems: Iterable[str] | None = None,
        routes: dict[str, str | None] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Shift traffic for the selected templates to ``new_tag``.

        A deployment of part of the project passes ``routes`` so that shared
        templates keep the other services on the version they run. Such a
        deployment may rewrite live configs an earlier part already wrote for
        ``new_tag``.

        Args:
            current_state: State of the host before this deployment
            new_tag: Version receiving traffic
            stems: Templates to shift; None means all of them
            routes: Tag per compose service, see ``stage_document``

        Returns:
            The promoted configs keyed by file name

        Raises:
            TrafficError: if a staged config for new_tag exists, or a live one
                when the whole project is deployed
            ValidationError: if a template has a malformed backend URL
            HealthCheckTimeoutError: if the new backends do not become healthy
        """
        if not new_tag:
            raise ValidationError("version tag cannot be empty")
        selected = self._selected(stems)

        if current_state.tag == new_tag:
            logger.info(f"traffic already on {new_tag}, nothing to shift")
            self._configs = {}
            for name, document in current_state.proxy.configs.items():
                parsed = parse_config_name(name, self.stems)
                if parsed and parsed[0] in selected:
                    self._configs[name] = document
            return self.dynamic_configs()

        checked = (True,) if routes is not None else (True, False)
        for stem in selected:
            for staged in checked:
                name = config_name(stem, new_tag, staged)
                if await self._exists(name):
                    raise TrafficError(f"proxy config {name} already exists for tag {new_tag}")

        staged_docs = {stem: stage_document(self._templates[stem], new_tag, routes) for stem in selected}
        for stem, document in staged_docs.items():
            await self._write(config_name(stem, new_tag, staged=True), document)
        logger.debug(f"staged {len(staged_docs)} proxy config(s) for {new_tag}")

        checks = []
        for document in staged_docs.values():
            checks.extend(self._health.checks_from_config(document))
        await self._health.wait(checks, self._health_timeout)

        promoted: dict[str, dict[str, Any]] = {}
        for stem, document in staged_docs.items():
            live = promote_document(document)
            name = config_name(stem, new_tag)
            await self._write(name, live)
            await self._remove(config_name(stem, new_tag, staged=True))
            promoted[name] = live
        logger.info(f"traffic shifted to {new_tag} ({', '.join(promoted) or 'no configs'})")

        for name in self._previous_configs(current_state, new_tag, selected):
            await self._remove(name)
            logger.debug(f"removed previous proxy config {name}")

        self._configs = promoted
        return self.dynamic_configs()

    def _previous_configs(
        self,
        state: DeploymentState,
        new_tag: str,
        selected: list[str],
    ) -> list[str]:
        names: set[str] = set()
        for name in state.proxy.configs:
            parsed = parse_config_name(name, self.stems)
            if parsed and parsed[0] in selected and parsed[1] != new_tag:
                names.add(name)
        if state.tag and state.tag != new_tag:
            for stem in selected:
                names.add(config_name(stem, state.tag))
                names.add(config_name(stem, state.tag, staged=True))
        return sorted(names)

    async def restore(
        self,
        previous_state: DeploymentState,
        failed_tag: str,
        stems: Iterable[str] | None = None,
    ) -> None:
        """Undo ``deploy``: drop the failed tag's configs and rewrite the previous ones."""
        selected = self._selected(stems)
        if failed_tag == previous_state.tag:
            return

        for stem in selected:
            await self._remove(config_name(stem, failed_tag, staged=True))
            await self._remove(config_name(stem, failed_tag))

        for name, document in previous_state.proxy.configs.items():
            parsed = parse_config_name(name, self.stems)
            if parsed and parsed[0] in selected:
                await self._write(name, document)
        logger.info(f"proxy configs restored to {previous_state.tag or 'empty state'}")

    async def wait_healthy(self, configs: dict[str, dict[str, Any]], timeout: float) -> None:
        """Wait for the backends declared in configs to pass their health checks."""
        checks = []
        for document in configs.values():
            checks.extend(self._health.checks_from_config(document))
        await self._health.wait(checks, timeout)

    async def prune(
        self,
        state: DeploymentState,
        stems: Iterable[str] | None = None,
    ) -> list[str]:
        """Delete configs whose tag is not deployed according to state.

        Returns:
            Names of the removed files
        """
        selected = set(self._selected(stems))
        deployed = {state.tag} | {svc.tag for svc in state.compose.services.values() if svc.tag}
        deployed.discard("")
        live = set(state.proxy.configs)

        removed: list[str] = []
        for name in await run_blocking(self._fs.list_dir, self._config_dir):
            parsed = parse_config_name(name, self.stems)
            if parsed is None or name in live:
                continue
            stem, tag, staged = parsed
            if stem not in selected:
                continue
            if staged or tag not in deployed:
                await self._remove(name)
                removed.append(name)

        if removed:
            logger.info(f"pruned {len(removed)} stale proxy config(s)")
        return removed
