"""Per-release files on the target host.

Each release lives in ``<work_dir>/releases/<tag>/`` and holds the compose
file, the tag override and the service env files under ``env/``.
"""

from pathlib import Path
from typing import Any

import yaml

from deployctl.clients.remote_fs import RemoteFileSystem, join
from deployctl.core.async_utils import run_blocking
from deployctl.core.exceptions import ValidationError
from deployctl.core.logging import get_logger
from deployctl.deploy.compose import Project, override_filename, release_compose
from deployctl.deploy.service import Service

logger = get_logger(__name__)

ENV_DIR = "env"
COMPOSE_FILENAME = "docker-compose.yml"


class ReleaseStager:
    """Upload and clean up the files of one release."""

    def __init__(self, fs: RemoteFileSystem, work_dir: str, project: Project):
        self._fs = fs
        self._work_dir = work_dir
        self._project = project

    def release_dir(self, tag: str) -> str:
        return join(self._work_dir, "releases", tag)

    def env_dir(self, tag: str) -> str:
        return join(self.release_dir(tag), ENV_DIR)

    def compose_files(self, tag: str) -> list[str]:
        release = self.release_dir(tag)
        return [join(release, COMPOSE_FILENAME), join(release, override_filename(tag))]

    @staticmethod
    def _staged_name(path: str) -> str:
        normalized = path.replace("\\", "/")
        while normalized.startswith("./"):
            normalized = normalized[2:]
        return normalized.replace("/", "_")

    def plan_environment(self, services: list[Service]) -> tuple[dict[str, Path], dict[str, list[str]]]:
        """Work out which env files a release needs.

        Returns:
            (uploads, staged): local file per staged name, and staged paths
            per service relative to the release directory

        Raises:
            ValidationError: if a declared env file does not exist locally
        """
        uploads: dict[str, Path] = {}
        staged: dict[str, list[str]] = {}
        for service in services:
            for env_file in service.env_files:
                local = Path(env_file)
                if not local.is_absolute():
                    local = self._project.base_dir / local
                if not local.is_file():
                    raise ValidationError(f"env file for {service.name} not found: {local}")
                name = self._staged_name(env_file)
                uploads[name] = local
                staged.setdefault(service.name, []).append(f"{ENV_DIR}/{name}")
        return uploads, staged

    async def stage_environment(self, tag: str, uploads: dict[str, Path]) -> None:
        await run_blocking(self._fs.makedirs, self.env_dir(tag))
        for name, local in uploads.items():
            await run_blocking(self._fs.upload, str(local), join(self.env_dir(tag), name))
        logger.debug(f"staged {len(uploads)} env file(s) for {tag}")

    async def remove_environment(self, tag: str, names: list[str]) -> None:
        for name in names:
            await run_blocking(self._fs.remove, join(self.env_dir(tag), name))

    async def stage_files(self, tag: str, env_files: dict[str, list[str]], override: dict[str, Any]) -> list[str]:
        """Upload the release compose file and its override.

        Returns:
            Remote compose file paths in the order compose should read them
        """
        compose_path, override_path = self.compose_files(tag)
        document = release_compose(self._project.raw, env_files)
        await run_blocking(self._fs.makedirs, self.release_dir(tag))
        await run_blocking(
            self._fs.write_text,
            compose_path,
            yaml.safe_dump(document, sort_keys=False, default_flow_style=False),
        )
        await run_blocking(
            self._fs.write_text,
            override_path,
            yaml.safe_dump(override, sort_keys=False, default_flow_style=False),
        )
        return [compose_path, override_path]

    async def remove_files(self, tag: str) -> None:
        for path in self.compose_files(tag):
            await run_blocking(self._fs.remove, path)

    async def remove_release(self, tag: str) -> None:
        if not tag:
            return
        await run_blocking(self._fs.remove_tree, self.release_dir(tag))
        logger.debug(f"removed release directory for {tag}")
