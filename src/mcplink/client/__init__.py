"""mcplink client module."""

from mcplink.client.config import HostConfig, ServerConfig
from mcplink.client.host import Host, ServerConnection
from mcplink.client.session import ClientSession
from mcplink.client.sse import sse_client

__all__ = ["ClientSession", "Host", "HostConfig", "ServerConfig", "ServerConnection", "sse_client"]
