"""Per-host deployment state persistence."""

import threading
import time
from collections.abc import Iterable
from datetime import timedelta

import yaml

from deployctl.clients.remote_fs import RemoteFileSystem, join
from deployctl.core.exceptions import LockError, RemoteExecutionError, StateError, ValidationError
from deployctl.core.logging import get_logger
from deployctl.deploy.models import (
    DEFAULT_HISTORY_LIMIT,
    ComposeServiceState,
    DeploymentLock,
    DeploymentState,
    TransactionLog,
    TransactionStatus,
)

logger = get_logger(__name__)

STATE_FILE = "deployment-state.yml"
DEFAULT_LOCK_TTL = timedelta(hours=1)


class StateManager:
    """Load and save the ledger file of one host.

    Every read-modify-write goes through a re-entrant mutex so concurrent
    tasks sharing this manager never interleave their updates.
    """

    def __init__(
        self,
        fs: RemoteFileSystem,
        work_dir: str,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        """Initialize the state manager.

        Args:
            fs: File access on the target host
            work_dir: Directory on the host holding the state file
            history_limit: Transaction records kept in the ledger
        """
        if not work_dir:
            raise ValidationError("state work directory cannot be empty")
        self._fs = fs
        self._work_dir = work_dir
        self._history_limit = history_limit
        self._mutex = threading.RLock()

    @property
    def path(self) -> str:
        return join(self._work_dir, STATE_FILE)

    @property
    def host(self) -> str:
        return self._fs.executor.host

    def load(self) -> DeploymentState:
        """Load the current state.

        Returns:
            The persisted state, or an empty state if none was written yet

        Raises:
            StateError: if the file exists but cannot be parsed
        """
        with self._mutex:
            try:
                if not self._fs.exists(self.path):
                    logger.debug(f"[{self.host}] no state at {self.path}, starting fresh")
                    return DeploymentState()
                content = self._fs.read_text(self.path)
            except RemoteExecutionError as e:
                raise StateError(f"[{self.host}] failed to read {self.path}: {e}") from e

            try:
                data = yaml.safe_load(content)
            except yaml.YAMLError as e:
                raise StateError(f"[{self.host}] malformed state file {self.path}: {e}") from e

            if data is None:
                return DeploymentState()
            if not isinstance(data, dict):
                raise StateError(f"[{self.host}] state file {self.path} is not a mapping")

            try:
                return DeploymentState.from_dict(data)
            except (AttributeError, TypeError, ValueError) as e:
                raise StateError(f"[{self.host}] malformed state file {self.path}: {e}") from e

    def save(self, state: DeploymentState) -> None:
        """Atomically replace the state file.

        The document is validated, written to a temporary file in the same
        directory and renamed over the canonical path.

        Raises:
            ValidationError: if the state is invalid (nothing is written)
            StateError: if the write or rename fails
        """
        state.validate()
        content = yaml.safe_dump(state.to_dict(), sort_keys=False, default_flow_style=False)
        tmp_path = f"{self.path}.{time.time_ns()}.tmp"

        with self._mutex:
            try:
                self._fs.makedirs(self._work_dir)
                self._fs.write_text(tmp_path, content)
                self._fs.rename(tmp_path, self.path)
            except RemoteExecutionError as e:
                self._discard(tmp_path)
                raise StateError(f"[{self.host}] failed to save state: {e}") from e

        logger.debug(f"[{self.host}] saved state tag={state.tag}")

    def _discard(self, tmp_path: str) -> None:
        try:
            self._fs.remove(tmp_path)
        except RemoteExecutionError as e:
            logger.warning(f"[{self.host}] failed to remove temporary state {tmp_path}: {e}")

    def update(
        self,
        services: dict[str, ComposeServiceState],
        proxy_configs: dict[str, dict],
        tag: str,
        scope: Iterable[str] | None = None,
        stale_configs: Iterable[str] | None = None,
    ) -> DeploymentState:
        """Fold a finished deployment into the persisted state and save it.

        Args:
            services: New service entries keyed by service name
            proxy_configs: New live proxy configs keyed by file name
            tag: Version tag that was deployed
            scope: Services that were deployed; None means the whole project
            stale_configs: Config names superseded by proxy_configs in a scoped update

        Returns:
            The saved state
        """
        with self._mutex:
            state = self.load()

            if scope is None:
                state.compose.services = dict(services)
                state.proxy.configs = dict(proxy_configs)
            else:
                for name in scope:
                    state.compose.services.pop(name, None)
                for name in stale_configs or ():
                    state.proxy.configs.pop(name, None)
                state.compose.services.update(services)
                state.proxy.configs.update(proxy_configs)

            state.tag = tag
            state.proxy.tag = tag
            self.save(state)
            return state

    def acquire_lock(self, owner: str, ttl: timedelta = DEFAULT_LOCK_TTL) -> DeploymentLock:
        """Record a lock held by owner.

        Raises:
            LockError: if an unexpired lock is already present
        """
        with self._mutex:
            state = self.load()
            if state.lock is not None and not state.lock.is_expired():
                raise LockError(
                    f"[{self.host}] deployment is locked by {state.lock.owner} "
                    f"until {state.lock.expires_at.isoformat()}",
                    owner=state.lock.owner,
                )
            if state.lock is not None:
                logger.warning(f"[{self.host}] replacing expired lock held by {state.lock.owner}")

            state.lock = DeploymentLock.create(owner, ttl)
            self.save(state)
            logger.debug(f"[{self.host}] lock acquired by {owner}")
            return state.lock

    def release_lock(self, owner: str) -> None:
        """Clear the lock if owner holds it.

        Raises:
            LockError: if another owner holds the lock
        """
        with self._mutex:
            state = self.load()
            if state.lock is None:
                logger.debug(f"[{self.host}] no lock to release")
                return
            if state.lock.owner != owner:
                raise LockError(
                    f"[{self.host}] lock is held by {state.lock.owner}, not {owner}",
                    owner=state.lock.owner,
                )
            state.lock = None
            self.save(state)
            logger.debug(f"[{self.host}] lock released by {owner}")

    def log_transaction(self, entry: TransactionLog) -> None:
        """Append a record to the persisted history."""
        self.log_transactions([entry])

    def log_transactions(self, entries: list[TransactionLog]) -> None:
        """Append several records with a single write."""
        if not entries:
            return
        with self._mutex:
            state = self.load()
            for entry in entries:
                state.add_transaction(entry, self._history_limit)
            self.save(state)

    def last_transaction(self, service_name: str) -> TransactionLog | None:
        for entry in reversed(self.load().history):
            if entry.service_name == service_name:
                return entry
        return None

    def failed_transactions(self) -> list[TransactionLog]:
        return [
            entry
            for entry in self.load().history
            if entry.status in (TransactionStatus.FAILED, TransactionStatus.ROLLED_BACK)
        ]

    def previous_version(self, services: Iterable[str] | None = None) -> str | None:
        """Most recent successfully deployed version other than the current one.

        Args:
            services: Only consider deployments of these services

        Returns:
            The version tag, or None if there is nothing to go back to
        """
        state = self.load()
        wanted = set(services) if services is not None else None
        for entry in reversed(state.history):
            if entry.status != TransactionStatus.COMPLETED or entry.action != "deploy":
                continue
            if wanted is not None and entry.service_name not in wanted:
                continue
            running = state.compose.services.get(entry.service_name)
            current = running.tag if running and running.tag else state.tag
            if entry.version and entry.version != current:
                return entry.version
        return None
