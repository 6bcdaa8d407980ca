from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import anyio
import pytest
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcplink.client.session import ClientSession
from mcplink.shared.exceptions import (
    ConnectionClosedError,
    McpError,
    ParseError,
    RequestTimeoutError,
    TransportError,
)
from mcplink.shared.message import SessionMessage
from mcplink.types import (
    CONNECTION_CLOSED,
    METHOD_NOT_FOUND,
    REQUEST_TIMEOUT,
    CallToolRequest,
    CallToolRequestParams,
    CallToolResult,
    ClientRequest,
    EmptyResult,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCRequest,
    JSONRPCResponse,
)


class Peer:
    """The far end of a client session, driven by hand."""

    def __init__(
        self,
        to_client: MemoryObjectSendStream[SessionMessage | Exception],
        from_client: MemoryObjectReceiveStream[SessionMessage],
    ):
        self.to_client = to_client
        self.from_client = from_client

    async def next_request(self) -> JSONRPCRequest:
        with anyio.fail_after(1):
            message = await self.from_client.receive()
        assert isinstance(message.message.root, JSONRPCRequest)
        return message.message.root

    async def reply(self, request_id: Any, result: dict[str, Any] | None = None) -> None:
        await self.to_client.send(
            SessionMessage(JSONRPCMessage(JSONRPCResponse(jsonrpc="2.0", id=request_id, result=result or {})))
        )

    async def reply_error(self, request_id: Any, error: ErrorData) -> None:
        error_reply = JSONRPCError(jsonrpc="2.0", id=request_id, error=error)
        await self.to_client.send(SessionMessage(JSONRPCMessage(error_reply)))


@asynccontextmanager
async def client_and_peer(**kwargs: Any) -> AsyncGenerator[tuple[ClientSession, Peer], None]:
    to_client, client_read = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    client_write, from_client = anyio.create_memory_object_stream[SessionMessage](10)
    async with to_client, from_client:
        async with ClientSession(client_read, client_write, **kwargs) as session:
            yield session, Peer(to_client, from_client)


@pytest.mark.anyio
async def test_request_and_response():
    async with client_and_peer() as (session, peer):
        async with anyio.create_task_group() as tg:

            async def serve():
                request = await peer.next_request()
                assert request.method == "ping"
                await peer.reply(request.id)

            tg.start_soon(serve)
            assert await session.send_ping() == EmptyResult()


@pytest.mark.anyio
async def test_error_response_raises_mcp_error():
    async with client_and_peer() as (session, peer):
        async with anyio.create_task_group() as tg:

            async def serve():
                request = await peer.next_request()
                await peer.reply_error(request.id, ErrorData(code=METHOD_NOT_FOUND, message="Method not found"))

            tg.start_soon(serve)
            with pytest.raises(McpError) as exc_info:
                await session.send_ping()
        assert exc_info.value.code == METHOD_NOT_FOUND


@pytest.mark.anyio
async def test_timeout_then_late_response_is_dropped():
    incoming: list[Any] = []

    async def message_handler(message: Any) -> None:
        incoming.append(message)

    async with client_and_peer(message_handler=message_handler) as (session, peer):
        with pytest.raises(RequestTimeoutError) as exc_info:
            await session.send_request(
                ClientRequest(CallToolRequest(params=CallToolRequestParams(name="slow", arguments={}))),
                CallToolResult,
                request_read_timeout_seconds=timedelta(seconds=0.05),
            )
        assert exc_info.value.code == REQUEST_TIMEOUT

        late = await peer.next_request()
        await peer.reply(late.id, {"content": []})

        # The session keeps working and the late reply never surfaces
        async with anyio.create_task_group() as tg:

            async def serve():
                request = await peer.next_request()
                assert request.id != late.id
                await peer.reply(request.id)

            tg.start_soon(serve)
            await session.send_ping()

    assert not any(isinstance(message, Exception) for message in incoming)


@pytest.mark.anyio
async def test_session_default_timeout():
    async with client_and_peer(read_timeout_seconds=timedelta(seconds=0.05)) as (session, _peer):
        with pytest.raises(RequestTimeoutError):
            await session.send_ping()


@pytest.mark.anyio
async def test_unknown_response_id_is_reported():
    incoming: list[Any] = []
    received = anyio.Event()

    async def message_handler(message: Any) -> None:
        incoming.append(message)
        received.set()

    async with client_and_peer(message_handler=message_handler) as (_session, peer):
        await peer.reply(12345)
        with anyio.fail_after(1):
            await received.wait()

    assert isinstance(incoming[0], RuntimeError)
    assert "12345" in str(incoming[0])


@pytest.mark.anyio
async def test_transport_error_rejects_pending_with_connection_closed():
    async with client_and_peer() as (session, peer):
        async with anyio.create_task_group() as tg:

            async def drop():
                await peer.next_request()
                await peer.to_client.send(TransportError("connection reset"))

            tg.start_soon(drop)
            with pytest.raises(ConnectionClosedError) as exc_info:
                await session.send_ping()
        assert exc_info.value.code == CONNECTION_CLOSED

        with anyio.fail_after(1):
            await session.wait_closed()
        assert isinstance(session.transport_error, TransportError)
        assert session.fatal_error is None


@pytest.mark.anyio
async def test_parse_error_is_fatal():
    async with client_and_peer() as (session, peer):
        async with anyio.create_task_group() as tg:

            async def corrupt():
                await peer.next_request()
                await peer.to_client.send(ParseError("Invalid Request"))

            tg.start_soon(corrupt)
            with pytest.raises(ParseError):
                await session.send_ping()

        with anyio.fail_after(1):
            await session.wait_closed()
        assert isinstance(session.fatal_error, ParseError)
        with pytest.raises(ParseError):
            await session.send_ping()


@pytest.mark.anyio
async def test_cancelled_caller_leaves_a_tombstone():
    incoming: list[Any] = []

    async def message_handler(message: Any) -> None:
        incoming.append(message)

    async with client_and_peer(message_handler=message_handler) as (session, peer):
        with anyio.move_on_after(0.05):
            await session.send_ping()
        abandoned = await peer.next_request()
        await peer.reply(abandoned.id)

        async with anyio.create_task_group() as tg:

            async def serve():
                request = await peer.next_request()
                await peer.reply(request.id)

            tg.start_soon(serve)
            await session.send_ping()

    assert not any(isinstance(message, Exception) for message in incoming)
