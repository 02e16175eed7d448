"""Minimal async JSON-RPC transport shared by the chain clients.

Uses httpx.AsyncClient with an explicit timeout on every call: blockchain
nodes can hang, and a hung node must surface as a transient failure rather
than a stuck request.
"""

from __future__ import annotations

import itertools
from typing import Any

import httpx


class RpcUnavailableError(Exception):
    """The node could not be reached or answered with an error. Retryable."""


class JsonRpcClient:
    """POSTs JSON-RPC 2.0 requests to a single node URL."""

    def __init__(self, rpc_url: str, timeout: float = 10.0) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._ids = itertools.count(1)

    async def call(self, method: str, params: list[Any]) -> Any:
        """Invoke *method* and return its ``result`` member.

        Raises:
            RpcUnavailableError: on timeout, connection failure, non-2xx
                status, unparseable body or a JSON-RPC error object.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.post(self.rpc_url, json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise RpcUnavailableError(
                f"{method} timed out after {self.timeout}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise RpcUnavailableError(
                f"{method} failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RpcUnavailableError(f"{method} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise RpcUnavailableError(f"{method} returned a non-JSON body") from exc

        if not isinstance(body, dict):
            raise RpcUnavailableError(f"{method} returned a malformed body")
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RpcUnavailableError(f"{method} error: {message}")

        return body.get("result")
