"""Utilities for creating standardized httpx AsyncClient instances."""

from typing import Any, Protocol

import httpx

__all__ = ["create_mcp_http_client"]


class McpHttpClientFactory(Protocol):
    def __call__(self, **kwargs: Any) -> httpx.AsyncClient: ...


def create_mcp_http_client(**kwargs: Any) -> httpx.AsyncClient:
    """Create an httpx AsyncClient with mcplink defaults.

    Defaults are ``follow_redirects=True`` and a 30 second timeout; any keyword
    accepted by ``httpx.AsyncClient`` overrides them.

    The returned AsyncClient must be used as a context manager to ensure
    proper cleanup of connections.

    Examples:
        async with create_mcp_http_client(headers={"Authorization": "Bearer token"}) as client:
            response = await client.get("/endpoint")

        timeout = httpx.Timeout(5.0, read=300.0)
        async with create_mcp_http_client(timeout=timeout) as client:
            response = await client.get("/long-request")
    """
    default_kwargs: dict[str, Any] = {
        "follow_redirects": True,
        "timeout": httpx.Timeout(30.0),
    }
    default_kwargs.update(kwargs)
    return httpx.AsyncClient(**default_kwargs)
