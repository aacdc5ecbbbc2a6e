from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

import httpx

from mcpbridge.utils.retries import async_retry

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


class UpstreamClient:
    """
    Lightweight wrapper around one shared httpx.AsyncClient providing
    a `.send(...)` coroutine with timeout and transport-level retry.

    Any HTTP response, whatever its status, is returned as-is; only transport
    failures (`httpx.RequestError`) escape. Non-idempotent methods are never retried.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        retry_attempts: int = 2,
        retry_backoff_base: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff_base = retry_backoff_base
        self._client = httpx.AsyncClient(transport=transport, timeout=timeout, follow_redirects=False)
        self._closed = False

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        params: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        if self._closed:
            raise RuntimeError("UpstreamClient is closed")

        method = method.upper()

        async def do_request() -> httpx.Response:
            return await self._client.request(
                method,
                url,
                headers=dict(headers),
                params=dict(params) if params else None,
                content=content,
            )

        retries = self.retry_attempts if method in IDEMPOTENT_METHODS else 0
        return await async_retry(
            do_request,
            retries=retries,
            base_delay=self.retry_backoff_base,
            exceptions=(httpx.RequestError,),
            label=f"{method} {url}",
        )

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._client.aclose()


class ConnectionManager:
    """
    Owns the process-wide upstream client; created at startup, closed at shutdown.
    """

    def __init__(self, client: Optional[UpstreamClient] = None, **client_options) -> None:
        self._client = client
        self._client_options: Dict = client_options

    @property
    def client(self) -> UpstreamClient:
        if self._client is None:
            self._client = UpstreamClient(**self._client_options)
        return self._client

    async def aclose_all(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
