"""Container and HTTP health checks with all-or-nothing polling."""

import asyncio
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import httpx

from deployctl.core.async_utils import run_blocking, run_with_timeout
from deployctl.core.exceptions import HealthCheckTimeoutError
from deployctl.core.logging import get_logger
from deployctl.core.utils import parse_duration
from deployctl.deploy.proxy import parse_backend_url

logger = get_logger(__name__)

DEFAULT_INTERVAL = 1.0
DEFAULT_HTTP_TIMEOUT = 5.0

InspectFunc = Callable[[str], dict[str, Any] | None]


class HealthCheck(Protocol):
    """Anything that can report healthy or not."""

    name: str

    async def check(self) -> bool: ...


class ContainerCheck:
    """Healthy when a container is running and, if it has a healthcheck, passing it."""

    def __init__(self, container: str, inspect: InspectFunc):
        self.container = container
        self.name = f"container:{container}"
        self._inspect = inspect

    async def check(self) -> bool:
        info = await run_blocking(self._inspect, self.container)
        if not info:
            return False
        state = info.get("State") or {}
        if state.get("Status") != "running":
            return False
        health = state.get("Health")
        if health:
            return health.get("Status") == "healthy"
        return True


class HTTPCheck:
    """Healthy when a request returns the expected status, or any 2xx."""

    def __init__(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        expected_status: int | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.method = method.upper()
        self.headers = headers or {}
        self.expected_status = expected_status
        self.timeout = timeout
        self.name = f"http:{self.method} {url}"
        self._client = client

    def _is_healthy(self, status_code: int) -> bool:
        if self.expected_status:
            return status_code == self.expected_status
        return 200 <= status_code < 300

    async def check(self) -> bool:
        try:
            if self._client is not None:
                response = await self._client.request(
                    self.method, self.url, headers=self.headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(self.method, self.url, headers=self.headers)
        except httpx.HTTPError as e:
            logger.debug(f"{self.name} failed: {e}")
            return False
        return self._is_healthy(response.status_code)


class HealthChecker:
    """Polls a set of checks until every one passes in the same tick."""

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL,
        client: httpx.AsyncClient | None = None,
        inspect: InspectFunc | None = None,
    ):
        """Initialize the health checker.

        Args:
            interval: Seconds between polling ticks
            client: Shared HTTP client for HTTP checks
            inspect: Container inspection call used by container checks
        """
        self.interval = interval
        self._client = client
        self._inspect = inspect

    def container_check(self, container: str) -> ContainerCheck:
        if self._inspect is None:
            raise ValueError("container checks need an inspect function")
        return ContainerCheck(container, self._inspect)

    def http_check(self, url: str, **kwargs: Any) -> HTTPCheck:
        kwargs.setdefault("client", self._client)
        return HTTPCheck(url, **kwargs)

    async def _tick(self, checks: Sequence[HealthCheck]) -> bool:
        results = await asyncio.gather(*(c.check() for c in checks), return_exceptions=True)
        healthy = True
        for check, result in zip(checks, results):
            if isinstance(result, BaseException):
                logger.debug(f"{check.name} raised: {result}")
                healthy = False
            elif not result:
                logger.debug(f"{check.name} not healthy yet")
                healthy = False
        return healthy

    async def wait_for_all(self, checks: Sequence[HealthCheck]) -> None:
        """Return once every check reports healthy in the same tick.

        Polls indefinitely; bound it with ``wait`` or by cancelling the task.
        """
        if not checks:
            return
        while True:
            if await self._tick(checks):
                logger.debug(f"{len(checks)} health check(s) passed")
                return
            await asyncio.sleep(self.interval)

    def start(self, checks: Sequence[HealthCheck]) -> "asyncio.Task[None]":
        """Run ``wait_for_all`` in the background; the task completes once."""
        return asyncio.create_task(self.wait_for_all(list(checks)))

    async def wait(self, checks: Sequence[HealthCheck], timeout: float) -> None:
        """Wait for all checks with a deadline.

        Raises:
            HealthCheckTimeoutError: if the checks do not pass in time
        """
        await run_with_timeout(
            self.wait_for_all(list(checks)),
            timeout,
            f"health checks did not pass within {timeout}s: "
            + ", ".join(c.name for c in checks),
            error_cls=HealthCheckTimeoutError,
        )

    def checks_from_config(self, document: dict[str, Any]) -> list[HTTPCheck]:
        """HTTP checks for every server of every load balancer with a healthCheck.

        Raises:
            ValidationError: if a server URL is malformed
        """
        http = document.get("http") or {}
        checks: list[HTTPCheck] = []
        for service in (http.get("services") or {}).values():
            load_balancer = (service or {}).get("loadBalancer") or {}
            descriptor = load_balancer.get("healthCheck")
            if not descriptor:
                continue
            for server in load_balancer.get("servers") or []:
                checks.append(self._check_for_server(server.get("url", ""), descriptor))
        return checks

    def _check_for_server(self, url: str, descriptor: dict[str, Any]) -> HTTPCheck:
        scheme, host, port = parse_backend_url(url)
        scheme = descriptor.get("scheme") or scheme
        port = int(descriptor.get("port") or port)
        path = descriptor.get("path") or "/"
        if not path.startswith("/"):
            path = f"/{path}"

        headers = {str(k): str(v) for k, v in (descriptor.get("headers") or {}).items()}
        if descriptor.get("hostname"):
            headers["Host"] = str(descriptor["hostname"])

        timeout = descriptor.get("timeout")
        if isinstance(timeout, str):
            timeout = parse_duration(timeout).total_seconds()

        return self.http_check(
            f"{scheme}://{host}:{port}{path}",
            method=descriptor.get("method") or "GET",
            headers=headers,
            expected_status=descriptor.get("status"),
            timeout=float(timeout or DEFAULT_HTTP_TIMEOUT),
        )
