"""
Shared HTTP clients for SCM REST APIs.

One pool per organization keeps connections alive across the calls a run
makes (auth check, work item lookup, pull request) and multiplexes them
over HTTP/2.
"""

import asyncio
import time
from typing import Any

import httpx
import structlog

log = structlog.get_logger(__name__)

USER_AGENT = "repo-conductor"


class HTTPConnectionPool:
    """Lazily created ``httpx.AsyncClient`` bound to one API base URL."""

    def __init__(
        self,
        base_url: str,
        max_connections: int = 10,
        max_keepalive_connections: int = 5,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url
        self.max_connections = max_connections
        self.max_keepalive_connections = max_keepalive_connections
        self.timeout = timeout
        self.headers = {"User-Agent": USER_AGENT, **(headers or {})}
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def initialize(self) -> None:
        async with self._lock:
            if self._client is not None:
                return
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                limits=httpx.Limits(
                    max_keepalive_connections=self.max_keepalive_connections,
                    max_connections=self.max_connections,
                    keepalive_expiry=30.0,
                ),
                timeout=self.timeout,
                http2=True,
                headers=self.headers,
            )
            log.debug("connection_pool_opened", base_url=self.base_url, max_connections=self.max_connections)

    async def close(self) -> None:
        async with self._lock:
            if self._client is None:
                return
            await self._client.aclose()
            self._client = None
            log.debug("connection_pool_closed", base_url=self.base_url)

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request relative to the base URL.

        Per-call ``headers`` are merged over the pool headers by httpx, so
        credentials can be passed per request without being stored here.
        Header values are never logged.
        """
        if self._client is None:
            await self.initialize()
        assert self._client is not None

        started = time.monotonic()
        response = await self._client.request(method, path, **kwargs)
        log.debug(
            "http_request",
            method=method,
            path=path,
            status=response.status_code,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return response

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def __aenter__(self) -> "HTTPConnectionPool":
        await self.initialize()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class ConnectionPoolManager:
    """Named pools, one per API endpoint, kept for the life of the process."""

    def __init__(self) -> None:
        self._pools: dict[str, HTTPConnectionPool] = {}
        self._lock = asyncio.Lock()

    async def get_pool(
        self,
        name: str,
        base_url: str,
        max_connections: int = 10,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ) -> HTTPConnectionPool:
        """Return the pool called ``name``, creating it on first use.

        Later calls with the same name get the existing pool; their
        ``base_url`` and settings are ignored.
        """
        async with self._lock:
            pool = self._pools.get(name)
            if pool is None:
                pool = HTTPConnectionPool(base_url, max_connections=max_connections, timeout=timeout, headers=headers)
                await pool.initialize()
                self._pools[name] = pool
            return pool

    async def close_pool(self, name: str) -> None:
        async with self._lock:
            pool = self._pools.pop(name, None)
        if pool is not None:
            await pool.close()

    async def close_all(self) -> None:
        async with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            await pool.close()
        if pools:
            log.debug("connection_pools_closed", count=len(pools))


_pool_manager = ConnectionPoolManager()


async def get_pool(
    name: str,
    base_url: str,
    max_connections: int = 10,
    timeout: float = 30.0,
    headers: dict[str, str] | None = None,
) -> HTTPConnectionPool:
    """Get a named pool from the process-wide manager."""
    return await _pool_manager.get_pool(
        name,
        base_url,
        max_connections=max_connections,
        timeout=timeout,
        headers=headers,
    )


async def close_all_pools() -> None:
    """Close every pool opened through ``get_pool``."""
    await _pool_manager.close_all()
