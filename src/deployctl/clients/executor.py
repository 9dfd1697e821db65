"""Command executors for local and SSH-reachable hosts.

Executors are synchronous. The deployment engine offloads them to a worker
thread through ``deployctl.core.async_utils.run_blocking``.
"""

import io
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

import paramiko

from deployctl.core.exceptions import RemoteExecutionError
from deployctl.core.logging import get_logger

logger = get_logger(__name__)

CONTAINER_ENGINES = ("docker", "podman")


@runtime_checkable
class Executor(Protocol):
    """Shell command and file transfer boundary used by the deployment engine."""

    @property
    def host(self) -> str: ...

    def exec(self, command: str) -> str:
        """Run a shell command and return its stdout.

        Raises:
            RemoteExecutionError: if the command exits non-zero
        """
        ...

    def test(self) -> bool:
        """Return True when the host is reachable."""
        ...

    def verify(self) -> None:
        """Check the host has what a deployment needs.

        Raises:
            RemoteExecutionError: if a prerequisite is missing
        """
        ...

    def send_file(self, local_path: str | Path, remote_path: str) -> None:
        """Copy a local file to the host."""
        ...

    def close(self) -> None: ...


class LocalExecutor:
    """Runs commands on this machine through the shell."""

    def __init__(self, cwd: str | Path | None = None, timeout: float | None = None):
        self._cwd = str(cwd) if cwd else None
        self._timeout = timeout

    @property
    def host(self) -> str:
        return "localhost"

    def exec(self, command: str) -> str:
        logger.debug(f"local exec: {command}")
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=self._cwd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise RemoteExecutionError(
                f"command timed out after {self._timeout}s: {command}",
                command=command,
            ) from e

        if result.returncode != 0:
            raise RemoteExecutionError(
                f"command failed with exit code {result.returncode}: {command}: {result.stderr.strip()}",
                command=command,
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        return result.stdout

    def test(self) -> bool:
        return True

    def verify(self) -> None:
        if not any(shutil.which(engine) for engine in CONTAINER_ENGINES):
            raise RemoteExecutionError("neither docker nor podman is installed locally")

    def send_file(self, local_path: str | Path, remote_path: str) -> None:
        destination = Path(remote_path).expanduser()
        if self._cwd and not destination.is_absolute():
            destination = Path(self._cwd) / destination
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, destination)

    def close(self) -> None:
        pass


class SSHExecutor:
    """Runs commands on a remote host over a single paramiko connection.

    Calls are serialised through a mutex so one connection can be shared by
    the concurrent tasks of a deployment.
    """

    def __init__(
        self,
        hostname: str,
        username: str = "root",
        port: int = 22,
        key_file: str | None = None,
        private_key: str | None = None,
        password: str | None = None,
        connect_timeout: float = 30.0,
    ):
        self._hostname = hostname
        self._username = username
        self._port = port
        self._key_file = key_file
        self._private_key = private_key
        self._password = password
        self._connect_timeout = connect_timeout
        self._client: paramiko.SSHClient | None = None
        self._lock = threading.Lock()

    @property
    def host(self) -> str:
        return self._hostname

    def _load_private_key(self) -> paramiko.PKey:
        last_error: Exception | None = None
        for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
            try:
                return key_cls.from_private_key(io.StringIO(self._private_key or ""))
            except paramiko.SSHException as e:
                last_error = e
        raise RemoteExecutionError(f"unsupported private key for {self._hostname}: {last_error}")

    def _connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs: dict = {
            "port": self._port,
            "username": self._username,
            "timeout": self._connect_timeout,
        }
        if self._private_key:
            kwargs["pkey"] = self._load_private_key()
        elif self._key_file:
            kwargs["key_filename"] = str(Path(self._key_file).expanduser())
        elif self._password:
            kwargs["password"] = self._password

        try:
            client.connect(self._hostname, **kwargs)
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteExecutionError(
                f"failed to connect to {self._username}@{self._hostname}:{self._port}: {e}"
            ) from e

        logger.debug(f"connected to {self._username}@{self._hostname}:{self._port}")
        self._client = client
        return client

    def exec(self, command: str) -> str:
        with self._lock:
            client = self._connect()
            logger.debug(f"[{self._hostname}] exec: {command}")
            try:
                _, stdout, stderr = client.exec_command(command)
                # Read both streams before the exit status; a full channel window stalls the remote
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
                exit_code = stdout.channel.recv_exit_status()
            except (paramiko.SSHException, OSError) as e:
                raise RemoteExecutionError(
                    f"[{self._hostname}] failed to run command: {command}: {e}",
                    command=command,
                ) from e

        if exit_code != 0:
            raise RemoteExecutionError(
                f"[{self._hostname}] command failed with exit code {exit_code}: {command}: {err.strip()}",
                command=command,
                exit_code=exit_code,
                stderr=err,
            )
        return out

    def test(self) -> bool:
        try:
            return self.exec("echo ok").strip() == "ok"
        except RemoteExecutionError as e:
            logger.debug(f"connectivity test to {self._hostname} failed: {e}")
            return False

    def verify(self) -> None:
        checks = " || ".join(f"command -v {engine}" for engine in CONTAINER_ENGINES)
        try:
            self.exec(checks)
        except RemoteExecutionError as e:
            raise RemoteExecutionError(
                f"neither docker nor podman is installed on {self._hostname}"
            ) from e

    def send_file(self, local_path: str | Path, remote_path: str) -> None:
        # SFTP paths are relative to the login directory
        target = remote_path[2:] if remote_path.startswith("~/") else remote_path
        with self._lock:
            client = self._connect()
            try:
                sftp = client.open_sftp()
                try:
                    sftp.put(str(local_path), target)
                finally:
                    sftp.close()
            except (paramiko.SSHException, OSError) as e:
                raise RemoteExecutionError(
                    f"[{self._hostname}] failed to upload {local_path} to {remote_path}: {e}"
                ) from e

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
