"""Version tags from the local git checkout."""

from pathlib import Path

from deployctl.clients.executor import LocalExecutor
from deployctl.core.exceptions import RemoteExecutionError, ValidationError


def current_tag(repo_dir: str | Path | None = None) -> str:
    """Short commit hash of HEAD, used as the deployment version tag.

    Raises:
        ValidationError: if repo_dir is not a git checkout
    """
    executor = LocalExecutor(cwd=repo_dir)
    try:
        tag = executor.exec("git rev-parse --short HEAD").strip()
    except RemoteExecutionError as e:
        raise ValidationError(
            "cannot determine version tag from git, pass --tag explicitly"
        ) from e
    if not tag:
        raise ValidationError("git returned an empty commit id")
    return tag
