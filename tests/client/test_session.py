from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import anyio
import pytest
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import AnyUrl

import mcplink.types as types
from mcplink.client.session import DEFAULT_CLIENT_CAPABILITIES, ClientSession
from mcplink.shared.exceptions import CapabilityError, IncompatibleVersionError, McpError, NegotiationTimeoutError
from mcplink.shared.message import SessionMessage

SERVER_INFO = {"name": "fake-server", "version": "9.9"}


class FakeServer:
    """Answers the client by hand."""

    def __init__(
        self,
        to_client: MemoryObjectSendStream[SessionMessage | Exception],
        from_client: MemoryObjectReceiveStream[SessionMessage],
    ):
        self.to_client = to_client
        self.from_client = from_client

    async def receive(self) -> types.JSONRPCRequest | types.JSONRPCNotification:
        with anyio.fail_after(2):
            message = await self.from_client.receive()
        root = message.message.root
        assert isinstance(root, types.JSONRPCRequest | types.JSONRPCNotification)
        return root

    async def respond(self, request_id: types.RequestId, result: dict[str, Any]) -> None:
        await self.to_client.send(
            SessionMessage(types.JSONRPCMessage(types.JSONRPCResponse(jsonrpc="2.0", id=request_id, result=result)))
        )

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self.to_client.send(
            SessionMessage(types.JSONRPCMessage(types.JSONRPCNotification(jsonrpc="2.0", method=method, params=params)))
        )

    async def accept_initialize(
        self,
        capabilities: dict[str, Any],
        protocol_version: str = types.LATEST_PROTOCOL_VERSION,
    ) -> types.JSONRPCRequest:
        request = await self.receive()
        assert isinstance(request, types.JSONRPCRequest)
        assert request.method == "initialize"
        await self.respond(
            request.id,
            {
                "protocolVersion": protocol_version,
                "capabilities": capabilities,
                "serverInfo": SERVER_INFO,
                "instructions": "be nice",
            },
        )
        return request


@asynccontextmanager
async def client_and_server(**kwargs: Any) -> AsyncGenerator[tuple[ClientSession, FakeServer], None]:
    to_client, client_read = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    client_write, from_client = anyio.create_memory_object_stream[SessionMessage](10)
    async with to_client, from_client:
        async with ClientSession(client_read, client_write, **kwargs) as session:
            yield session, FakeServer(to_client, from_client)


async def initialized(
    session: ClientSession, server: FakeServer, capabilities: dict[str, Any], **kwargs: Any
) -> types.JSONRPCRequest:
    async with anyio.create_task_group() as tg:
        tg.start_soon(session.initialize)
        request = await server.accept_initialize(capabilities, **kwargs)
    notification = await server.receive()
    assert notification.method == "notifications/initialized"
    return request


class TestNegotiation:
    @pytest.mark.anyio
    async def test_initialize_request(self):
        async with client_and_server() as (session, server):
            request = await initialized(session, server, {"tools": {}})

        assert request.params is not None
        assert request.params["protocolVersion"] == types.LATEST_PROTOCOL_VERSION
        assert request.params["clientInfo"]["name"] == "mcplink"
        sent = types.ClientCapabilities.model_validate(request.params["capabilities"])
        assert sent == DEFAULT_CLIENT_CAPABILITIES

    @pytest.mark.anyio
    async def test_negotiated_session(self):
        async with client_and_server() as (session, server):
            await initialized(session, server, {"tools": {"listChanged": True}, "resources": {}})

            negotiated = session.negotiated_session

        assert negotiated is not None
        assert negotiated.peer_info.name == "fake-server"
        assert negotiated.instructions == "be nice"
        assert session.get_server_capabilities() == types.ServerCapabilities.model_validate(
            {"tools": {"listChanged": True}, "resources": {}}
        )
        assert negotiated.capabilities.list_changed("tools") is True
        assert negotiated.capabilities.subscribe is False
        assert session.supports("resources/read")
        assert not session.supports("prompts/list")

    @pytest.mark.anyio
    async def test_older_supported_version(self):
        async with client_and_server() as (session, server):
            await initialized(session, server, {}, protocol_version="2024-11-05")

            assert session.negotiated_session is not None
            assert session.negotiated_session.protocol_version == "2024-11-05"

    @pytest.mark.anyio
    async def test_incompatible_version(self):
        async with client_and_server() as (session, server):
            async with anyio.create_task_group() as tg:

                async def answer():
                    await server.accept_initialize({}, protocol_version="1999-01-01")

                tg.start_soon(answer)
                with pytest.raises(IncompatibleVersionError) as exc_info:
                    await session.initialize()

        assert exc_info.value.answered == "1999-01-01"
        assert session.negotiated_session is None

    @pytest.mark.anyio
    async def test_incompatible_version_closes_the_session(self):
        async with client_and_server() as (session, server):
            async with anyio.create_task_group() as tg:

                async def answer():
                    await server.accept_initialize({"tools": {}}, protocol_version="1999-01-01")

                tg.start_soon(answer)
                with pytest.raises(IncompatibleVersionError):
                    await session.initialize()

            assert session.closed
            assert isinstance(session.fatal_error, IncompatibleVersionError)
            with pytest.raises(IncompatibleVersionError):
                await session.list_tools()
            # no notifications/initialized and nothing after it
            with pytest.raises((anyio.WouldBlock, anyio.EndOfStream)):
                server.from_client.receive_nowait()

    @pytest.mark.anyio
    async def test_initialize_timeout(self):
        async with client_and_server(initialize_timeout=0.1) as (session, _server):
            with pytest.raises(NegotiationTimeoutError) as exc_info:
                await session.initialize()

        assert exc_info.value.code == types.REQUEST_TIMEOUT


class TestCapabilityGating:
    @pytest.mark.anyio
    async def test_method_outside_capabilities_never_hits_the_wire(self):
        async with client_and_server() as (session, server):
            await initialized(session, server, {"tools": {}})

            with pytest.raises(CapabilityError) as exc_info:
                await session.list_prompts()
            with pytest.raises(CapabilityError):
                await session.subscribe_resource("file:///x")

            with pytest.raises(anyio.WouldBlock):
                server.from_client.receive_nowait()

        assert exc_info.value.method == "prompts/list"
        assert exc_info.value.code == types.CAPABILITY_NOT_SUPPORTED

    @pytest.mark.anyio
    async def test_methods_refused_before_initialize(self):
        async with client_and_server() as (session, server):
            with pytest.raises(CapabilityError) as exc_info:
                await session.list_tools()

            with pytest.raises(anyio.WouldBlock):
                server.from_client.receive_nowait()

        assert exc_info.value.method == "tools/list"

    @pytest.mark.anyio
    async def test_client_side_narrowing(self):
        capabilities = types.ClientCapabilities(resources=types.ResourcesCapability(subscribe=False))
        async with client_and_server(capabilities=capabilities) as (session, server):
            await initialized(session, server, {"resources": {"subscribe": True}})

            with pytest.raises(CapabilityError):
                await session.subscribe_resource("file:///x")
            assert session.supports("resources/list")


class TestNotifications:
    @pytest.mark.anyio
    async def test_resource_callbacks(self):
        updated: list[str] = []
        per_uri: list[str] = []

        async def on_updated(uri: AnyUrl) -> None:
            updated.append(str(uri))

        async def on_orders(uri: AnyUrl) -> None:
            per_uri.append(str(uri))

        async with client_and_server(resource_updated_callback=on_updated) as (session, server):
            await initialized(session, server, {"resources": {"subscribe": True}})

            async with anyio.create_task_group() as tg:
                tg.start_soon(session.subscribe_resource, "db://orders", on_orders)
                request = await server.receive()
                assert isinstance(request, types.JSONRPCRequest)
                assert request.method == "resources/subscribe"
                await server.respond(request.id, {})

            await server.notify("notifications/resources/updated", {"uri": "db://orders"})
            await server.notify("notifications/resources/updated", {"uri": "db://users"})
            # a ping answered means both notifications were handled
            async with anyio.create_task_group() as tg:
                tg.start_soon(session.send_ping)
                ping = await server.receive()
                assert isinstance(ping, types.JSONRPCRequest)
                await server.respond(ping.id, {})

        assert per_uri == ["db://orders"]
        assert updated == ["db://orders", "db://users"]

    @pytest.mark.anyio
    async def test_list_changed_callback(self):
        kinds: list[str] = []

        async def on_changed(kind: str) -> None:
            kinds.append(kind)

        async with client_and_server(list_changed_callback=on_changed) as (session, server):
            await initialized(session, server, {"tools": {"listChanged": True}, "prompts": {"listChanged": True}})

            await server.notify("notifications/tools/list_changed")
            await server.notify("notifications/prompts/list_changed")
            async with anyio.create_task_group() as tg:
                tg.start_soon(session.send_ping)
                ping = await server.receive()
                assert isinstance(ping, types.JSONRPCRequest)
                await server.respond(ping.id, {})

        assert kinds == ["tools", "prompts"]

    @pytest.mark.anyio
    async def test_failing_callback_keeps_the_session(self):
        async def broken(kind: str) -> None:
            raise RuntimeError("callback bug")

        async with client_and_server(list_changed_callback=broken) as (session, server):
            await initialized(session, server, {"tools": {"listChanged": True}})
            await server.notify("notifications/tools/list_changed")

            async with anyio.create_task_group() as tg:
                tg.start_soon(session.send_ping)
                ping = await server.receive()
                assert isinstance(ping, types.JSONRPCRequest)
                await server.respond(ping.id, {})

            assert not session.closed


class TestPaging:
    @pytest.mark.anyio
    async def test_list_all_follows_cursors(self):
        async with client_and_server() as (session, server):
            await initialized(session, server, {"tools": {}})
            tools: list[types.Tool] = []

            async def collect():
                tools.extend(await session.list_all_tools())

            async with anyio.create_task_group() as tg:
                tg.start_soon(collect)
                first = await server.receive()
                assert isinstance(first, types.JSONRPCRequest)
                assert not (first.params or {}).get("cursor")
                await server.respond(
                    first.id, {"tools": [{"name": "a", "inputSchema": {"type": "object"}}], "nextCursor": "page-2"}
                )
                second = await server.receive()
                assert isinstance(second, types.JSONRPCRequest)
                assert second.params is not None
                assert second.params["cursor"] == "page-2"
                await server.respond(second.id, {"tools": [{"name": "b", "inputSchema": {"type": "object"}}]})

        assert [tool.name for tool in tools] == ["a", "b"]

    @pytest.mark.anyio
    async def test_repeated_cursor_stops_paging(self):
        async with client_and_server() as (session, server):
            await initialized(session, server, {"tools": {}})
            errors: list[McpError] = []

            async def collect():
                with pytest.raises(McpError) as exc_info:
                    await session.list_all_tools()
                errors.append(exc_info.value)

            async with anyio.create_task_group() as tg:
                tg.start_soon(collect)
                for _ in range(2):
                    request = await server.receive()
                    assert isinstance(request, types.JSONRPCRequest)
                    assert request.method == "tools/list"
                    await server.respond(request.id, {"tools": [], "nextCursor": "again"})

            # the client gave up instead of asking a third time
            with pytest.raises(anyio.WouldBlock):
                server.from_client.receive_nowait()

        assert errors[0].error.code == types.INTERNAL_ERROR
        assert errors[0].error.data == {"cursor": "again"}
