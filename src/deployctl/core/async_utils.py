"""Async helpers shared by the deployment engine."""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")


async def run_with_timeout(
    coro: Awaitable[T],
    timeout: float,
    timeout_message: str = "Operation timed out",
    error_cls: type[Exception] | None = None,
) -> T:
    """Run a coroutine with a timeout.

    Args:
        coro: Coroutine to run
        timeout: Timeout in seconds
        timeout_message: Message for timeout error
        error_cls: TimeoutError subclass to raise instead of the default

    Returns:
        Result of the coroutine

    Raises:
        TimeoutError: If the operation times out
    """
    from deployctl.core.exceptions import TimeoutError

    cls = error_cls or TimeoutError
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        raise cls(timeout_message, timeout_seconds=timeout) from None


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking call (SSH, subprocess) on the default executor.

    Args:
        func: Blocking callable
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Whatever func returns
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def run_sync(coro: Awaitable[T]) -> T:
    """Run an async function synchronously.

    This is useful for integrating async code with Click commands.

    Args:
        coro: Coroutine to run

    Returns:
        Result of the coroutine
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside an event loop, run on a fresh one in a worker thread
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor() as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    else:
        return asyncio.run(coro)
