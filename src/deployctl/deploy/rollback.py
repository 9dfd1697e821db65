"""Compensating actions run in reverse order when a deployment fails."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from deployctl.core.async_utils import run_with_timeout
from deployctl.core.exceptions import RollbackError
from deployctl.core.logging import get_logger
from deployctl.deploy.models import DeploymentState

logger = get_logger(__name__)

DEFAULT_STEP_TIMEOUT = 300.0

Action = Callable[[], Awaitable[None]]
StateLoader = Callable[[], Awaitable[DeploymentState]]


@dataclass
class RollbackStep:
    """A compensating action plus an optional post-condition check."""

    name: str
    compensate: Action
    verify: Action | None = None


class RollbackManager:
    """Ordered compensations for one deployment attempt.

    Steps are registered in the order the forward actions happen and are
    undone last-first. A failing step never stops the ones before it.
    """

    def __init__(
        self,
        load_state: StateLoader | None = None,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
    ):
        """Initialize the rollback manager.

        Args:
            load_state: Loads the persisted state, used to check that rollback
                left it as it was before the attempt
            step_timeout: Seconds allowed for each compensation
        """
        self._steps: list[RollbackStep] = []
        self._load_state = load_state
        self._step_timeout = step_timeout
        self._baseline: DeploymentState | None = None

    @property
    def steps(self) -> list[str]:
        return [step.name for step in self._steps]

    def add_step(self, name: str, compensate: Action, verify: Action | None = None) -> None:
        self._steps.append(RollbackStep(name=name, compensate=compensate, verify=verify))
        logger.debug(f"registered rollback step: {name}")

    def set_baseline(self, state: DeploymentState) -> None:
        """State the host must be back in once rollback has finished."""
        self._baseline = state.copy()

    async def rollback(self) -> None:
        """Run every compensation in reverse, then every verifier.

        Raises:
            RollbackError: with one entry per failed step, verifier, or a
                state mismatch
        """
        errors: list[str] = []

        baseline = self._baseline
        if baseline is None and self._load_state is not None:
            try:
                baseline = await self._load_state()
            except Exception as e:
                errors.append(f"load initial state: {e}")

        logger.info(f"rolling back {len(self._steps)} step(s)")

        for step in reversed(self._steps):
            logger.debug(f"rollback: {step.name}")
            try:
                await run_with_timeout(
                    step.compensate(),
                    self._step_timeout,
                    f"rollback step '{step.name}' timed out after {self._step_timeout}s",
                )
            except Exception as e:
                logger.error(f"rollback step '{step.name}' failed: {e}")
                errors.append(f"{step.name}: {e}")

        for step in self._steps:
            if step.verify is None:
                continue
            try:
                await step.verify()
            except Exception as e:
                logger.error(f"rollback verification '{step.name}' failed: {e}")
                errors.append(f"verify {step.name}: {e}")

        if baseline is not None and self._load_state is not None:
            try:
                final = await self._load_state()
            except Exception as e:
                errors.append(f"load final state: {e}")
            else:
                if final != baseline:
                    errors.append(
                        f"state mismatch after rollback: expected tag {baseline.tag!r}, "
                        f"found {final.tag!r}"
                    )

        if errors:
            raise RollbackError(errors)

        logger.info("rollback completed")
