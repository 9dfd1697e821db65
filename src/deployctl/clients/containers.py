"""Docker/Podman and compose wrapper."""

import json
import shlex
from typing import Any

from deployctl.clients.executor import CONTAINER_ENGINES, Executor
from deployctl.clients.remote_fs import quote_path
from deployctl.core.exceptions import RemoteExecutionError, ValidationError
from deployctl.core.logging import get_logger

logger = get_logger(__name__)


class ContainerManager:
    """Container engine commands run through an executor.

    The same class drives the local engine (build, push) and the remote one
    (pull, up, rm, inspect).
    """

    def __init__(self, executor: Executor, engine: str = "auto"):
        if engine != "auto" and engine not in CONTAINER_ENGINES:
            raise ValidationError(f"unsupported container engine: {engine}")
        self._executor = executor
        self._engine = None if engine == "auto" else engine

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def engine(self) -> str:
        """The container engine binary, detected on first use."""
        if self._engine is None:
            for candidate in CONTAINER_ENGINES:
                try:
                    self._executor.exec(f"command -v {candidate}")
                except RemoteExecutionError:
                    continue
                self._engine = candidate
                break
            else:
                raise RemoteExecutionError(
                    f"neither docker nor podman is installed on {self._executor.host}"
                )
            logger.debug(f"using {self._engine} on {self._executor.host}")
        return self._engine

    def login(self, registry: str, username: str, password: str) -> None:
        self._executor.exec(
            f"echo {shlex.quote(password)} | {self.engine} login {shlex.quote(registry)} "
            f"-u {shlex.quote(username)} --password-stdin"
        )

    def build(
        self,
        image: str,
        context: str = ".",
        dockerfile: str | None = None,
        args: dict[str, str] | None = None,
    ) -> None:
        parts = [self.engine, "build", "-t", shlex.quote(image)]
        if dockerfile:
            parts += ["-f", quote_path(dockerfile)]
        for key, value in (args or {}).items():
            parts += ["--build-arg", shlex.quote(f"{key}={value}")]
        parts.append(quote_path(context))
        logger.info(f"building {image}")
        self._executor.exec(" ".join(parts))

    def push(self, image: str) -> None:
        logger.info(f"pushing {image}")
        self._executor.exec(f"{self.engine} push {shlex.quote(image)}")

    def pull(self, images: list[str]) -> None:
        for image in images:
            logger.debug(f"[{self._executor.host}] pulling {image}")
            self._executor.exec(f"{self.engine} pull {shlex.quote(image)}")

    def up(self, project: str, compose_files: list[str], services: list[str]) -> None:
        """Start services of a compose project without touching their dependencies."""
        parts = [self.engine, "compose", "-p", shlex.quote(project)]
        for compose_file in compose_files:
            parts += ["-f", quote_path(compose_file)]
        parts += ["up", "-d", "--no-deps"]
        parts += [shlex.quote(s) for s in services]
        self._executor.exec(" ".join(parts))

    def down(self, containers: list[str]) -> None:
        """Force-remove containers by name."""
        if not containers:
            return
        names = " ".join(shlex.quote(c) for c in containers)
        self._executor.exec(f"{self.engine} rm -f {names}")

    def inspect(self, container: str) -> dict[str, Any] | None:
        """Inspection document for a container, or None if it does not exist."""
        try:
            out = self._executor.exec(
                f"{self.engine} inspect --type container {shlex.quote(container)}"
            )
        except RemoteExecutionError as e:
            if e.stderr and "no such" in e.stderr.lower():
                return None
            raise

        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise RemoteExecutionError(f"unexpected inspect output for {container}: {e}") from e
        if isinstance(data, list):
            return data[0] if data else None
        return data

    def is_running(self, container: str) -> bool:
        info = self.inspect(container)
        if info is None:
            return False
        return (info.get("State") or {}).get("Status") == "running"
