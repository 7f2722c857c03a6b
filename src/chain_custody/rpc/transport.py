"""JSON-RPC 2.0 over HTTP.

The transport is the only place that touches the network.  It classifies
every failure into one of the transient endpoint errors so the failover
manager can decide whether another endpoint should be tried.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Optional, Protocol

import httpx

from chain_custody.errors import (
    EndpointRateLimited,
    EndpointServerError,
    EndpointTimeout,
    EndpointUnreachable,
    JsonRpcError,
    MalformedResponse,
)

logger = logging.getLogger("chain_custody.rpc.transport")


class JsonRpcTransport(Protocol):
    async def request(
        self, url: str, method: str, params: list, timeout: Optional[float] = None
    ) -> Any:
        """Return the ``result`` member or raise a classified error."""
        ...


class HttpxTransport:
    """Shared :class:`httpx.AsyncClient` speaking JSON-RPC to any endpoint URL."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def request(
        self, url: str, method: str, params: list, timeout: Optional[float] = None
    ) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        kwargs: dict[str, Any] = {"json": payload}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = await self._client.post(url, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
            # The request never left this process.
            raise EndpointUnreachable(url, str(exc) or "connection failed") from exc
        except httpx.TimeoutException as exc:
            raise EndpointTimeout(url, f"{method} timed out") from exc
        except httpx.TransportError as exc:
            raise EndpointTimeout(url, f"{method}: {exc}") from exc

        if response.status_code == 429:
            raise EndpointRateLimited(url)
        if response.status_code >= 400:
            raise EndpointServerError(url, response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponse(url, "response body is not JSON") from exc
        return parse_response(url, body)


def parse_response(url: str, body: Any) -> Any:
    """Extract ``result`` from a JSON-RPC response body."""
    if not isinstance(body, dict):
        raise MalformedResponse(url, "response is not a JSON object")
    error = body.get("error")
    if error is not None:
        if not isinstance(error, dict):
            raise MalformedResponse(url, "error member is not an object")
        raise JsonRpcError(
            code=int(error.get("code", 0)),
            message=str(error.get("message", "")),
            data=error.get("data"),
            url=url,
        )
    if "result" not in body:
        raise MalformedResponse(url, "response has neither result nor error")
    return body["result"]
