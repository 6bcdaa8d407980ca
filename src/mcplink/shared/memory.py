"""
In-memory transports
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

import mcplink.types as types
from mcplink.client.session import (
    ClientSession,
    ListChangedFnT,
    LoggingFnT,
    MessageHandlerFnT,
    ResourceUpdatedFnT,
)
from mcplink.server.lowlevel import NotificationOptions, Server
from mcplink.server.server import MCPServer
from mcplink.shared.message import SessionMessage

MessageStream = tuple[MemoryObjectReceiveStream[SessionMessage | Exception], MemoryObjectSendStream[SessionMessage]]


@asynccontextmanager
async def create_client_server_memory_streams() -> AsyncGenerator[tuple[MessageStream, MessageStream], None]:
    """
    Creates a pair of bidirectional memory streams for client-server communication.

    Returns:
        A tuple of (client_streams, server_streams) where each is a tuple of
        (read_stream, write_stream)
    """
    # Create streams for both directions
    server_to_client_send, server_to_client_receive = anyio.create_memory_object_stream[SessionMessage | Exception](1)
    client_to_server_send, client_to_server_receive = anyio.create_memory_object_stream[SessionMessage | Exception](1)

    client_streams = (server_to_client_receive, client_to_server_send)
    server_streams = (client_to_server_receive, server_to_client_send)

    async with (
        server_to_client_receive,
        client_to_server_send,
        client_to_server_receive,
        server_to_client_send,
    ):
        yield client_streams, server_streams


@asynccontextmanager
async def create_connected_server_and_client_session(
    server: Server[Any, Any] | MCPServer[Any],
    read_timeout_seconds: timedelta | None = None,
    logging_callback: LoggingFnT | None = None,
    resource_updated_callback: ResourceUpdatedFnT | None = None,
    list_changed_callback: ListChangedFnT | None = None,
    message_handler: MessageHandlerFnT | None = None,
    client_info: types.Implementation | None = None,
    client_capabilities: types.ClientCapabilities | None = None,
    notification_options: NotificationOptions | None = None,
    raise_exceptions: bool = False,
    initialize: bool = True,
) -> AsyncGenerator[ClientSession, None]:
    """Creates a ClientSession that is connected to a running `server`."""
    if isinstance(server, MCPServer):
        notification_options = notification_options or server.notification_options
        server = server.lowlevel_server

    async with create_client_server_memory_streams() as (client_streams, server_streams):
        client_read, client_write = client_streams
        server_read, server_write = server_streams

        # Create a cancel scope for the server task
        async with anyio.create_task_group() as tg:
            tg.start_soon(
                lambda: server.run(
                    server_read,
                    server_write,
                    server.create_initialization_options(notification_options),
                    raise_exceptions=raise_exceptions,
                )
            )

            try:
                async with ClientSession(
                    read_stream=client_read,
                    write_stream=client_write,
                    read_timeout_seconds=read_timeout_seconds,
                    logging_callback=logging_callback,
                    resource_updated_callback=resource_updated_callback,
                    list_changed_callback=list_changed_callback,
                    message_handler=message_handler,
                    client_info=client_info,
                    capabilities=client_capabilities,
                ) as client_session:
                    if initialize:
                        await client_session.initialize()
                    yield client_session
            finally:
                tg.cancel_scope.cancel()
