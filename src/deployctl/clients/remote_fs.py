"""File operations expressed as shell commands over an executor."""

import os
import shlex
import tempfile

from deployctl.clients.executor import Executor
from deployctl.core.exceptions import RemoteExecutionError


def quote_path(path: str) -> str:
    """Shell-quote a path, leaving a leading ``~/`` unquoted so it still expands."""
    if path.startswith("~/"):
        return "~/" + shlex.quote(path[2:])
    return shlex.quote(path)


def join(*parts: str) -> str:
    """Join remote path segments with forward slashes."""
    return "/".join(p.rstrip("/") for p in parts[:-1]) + "/" + parts[-1].lstrip("/")


class RemoteFileSystem:
    """Thin file API over ``Executor.exec`` and ``Executor.send_file``."""

    def __init__(self, executor: Executor):
        self._executor = executor

    @property
    def executor(self) -> Executor:
        return self._executor

    def exists(self, path: str) -> bool:
        out = self._executor.exec(f"test -e {quote_path(path)} && echo yes || echo no")
        return out.strip() == "yes"

    def read_text(self, path: str) -> str:
        return self._executor.exec(f"cat {quote_path(path)}")

    def write_text(self, path: str, content: str) -> None:
        """Upload content to path, replacing any existing file."""
        fd, local_path = tempfile.mkstemp(prefix="deployctl-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            self._executor.send_file(local_path, path)
        finally:
            os.unlink(local_path)

    def upload(self, local_path: str, path: str) -> None:
        self._executor.send_file(local_path, path)

    def rename(self, src: str, dst: str) -> None:
        self._executor.exec(f"mv -f {quote_path(src)} {quote_path(dst)}")

    def remove(self, path: str) -> None:
        self._executor.exec(f"rm -f {quote_path(path)}")

    def remove_tree(self, path: str) -> None:
        if path.strip("/~. ") == "":
            raise RemoteExecutionError(f"refusing to remove {path!r}")
        self._executor.exec(f"rm -rf {quote_path(path)}")

    def makedirs(self, path: str) -> None:
        self._executor.exec(f"mkdir -p {quote_path(path)}")

    def list_dir(self, path: str) -> list[str]:
        """Names of the entries in path, or an empty list if it does not exist."""
        out = self._executor.exec(f"ls -1A {quote_path(path)} 2>/dev/null || true")
        return [line.strip() for line in out.splitlines() if line.strip()]
