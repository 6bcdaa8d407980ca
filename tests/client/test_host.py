from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import anyio
import pytest
from anyio.streams.memory import MemoryObjectSendStream
from pydantic import AnyUrl

import mcplink.types as types
from mcplink.client import Host, HostConfig, ServerConfig
from mcplink.client.host import TransportStreams
from mcplink.server import MCPServer
from mcplink.shared.exceptions import McpError, TransportError
from mcplink.shared.memory import create_client_server_memory_streams


class MemoryNetwork:
    """In-memory stand-in for the network: each server config URL names an MCPServer."""

    def __init__(self, **servers: MCPServer):
        self.servers = servers
        self.links: dict[str, MemoryObjectSendStream[Any]] = {}
        self.refusals: dict[str, int] = {}
        self.connects: dict[str, int] = {}

    @asynccontextmanager
    async def transport(self, params: ServerConfig) -> AsyncIterator[TransportStreams]:
        name = params.url
        self.connects[name] = self.connects.get(name, 0) + 1
        if self.refusals.get(name, 0) > 0:
            self.refusals[name] -= 1
            raise TransportError(f"connection to {name} refused")

        server = self.servers[name]
        async with create_client_server_memory_streams() as (client_streams, server_streams):
            async with anyio.create_task_group() as tg:
                tg.start_soon(
                    lambda: server.lowlevel_server.run(
                        server_streams[0], server_streams[1], server.create_initialization_options()
                    )
                )
                self.links[name] = server_streams[1]
                try:
                    yield client_streams
                finally:
                    tg.cancel_scope.cancel()

    async def drop(self, name: str) -> None:
        """Cut the channel to ``name`` as a failing network would."""
        await self.links[name].send(TransportError("link down"))


def host_config(*names: str) -> HostConfig:
    return HostConfig(servers={name: ServerConfig(url=name) for name in names})


def db_server() -> MCPServer:
    server = MCPServer("db")

    @server.tool(description="Run a read-only query")
    def query_db(sql: str) -> str:
        return f"ran {sql}"

    @server.tool()
    async def chatty() -> str:
        await server.get_context().session.send_log_message(level="info", data="working on it")
        return "done"

    server.add_store_resource("kv://orders", "orders")
    server.add_prompt_template("summarize", "Summarize {table}")
    return server


async def eventually(check: Callable[[], bool], timeout: float = 2) -> None:
    with anyio.fail_after(timeout):
        while not check():
            await anyio.sleep(0.01)


class Changes:
    def __init__(self) -> None:
        self.seen: list[tuple[str, str, str]] = []

    async def __call__(self, server: str, uri: AnyUrl, result: types.ReadResourceResult) -> None:
        content = result.contents[0]
        assert isinstance(content, types.TextResourceContents)
        self.seen.append((server, str(uri), content.text))


@asynccontextmanager
async def running_host(network: MemoryNetwork, *names: str, **kwargs: Any) -> AsyncIterator[Host]:
    kwargs.setdefault("reconnect_backoff", 0.01)
    async with Host(host_config(*names), transport_factory=network.transport, **kwargs) as host:
        yield host


class TestConnect:
    @pytest.mark.anyio
    async def test_connect_fills_catalogs(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            conn = await host.connect("db")

            assert conn.connected
            assert set(conn.tools) == {"query_db", "chatty"}
            assert list(conn.resources) == ["kv://orders"]
            assert list(conn.prompts) == ["summarize"]
            assert set(host.tools) == {"db/query_db", "db/chatty"}

    @pytest.mark.anyio
    async def test_tools_of_every_server(self):
        other = MCPServer("files")

        @other.tool()
        def list_files() -> list[str]:
            return ["a.txt"]

        network = MemoryNetwork(db=db_server(), files=other)

        async with running_host(network, "db", "files") as host:
            await host.connect("db")
            await host.connect("files")

            assert set(host.tools) == {"db/query_db", "db/chatty", "files/list_files"}
            result = await host.call_tool("files/list_files")

        assert result.content == [types.TextContent(text="a.txt")]

    @pytest.mark.anyio
    async def test_call_tool(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            await host.connect("db")
            result = await host.call_tool("db/query_db", {"sql": "select 1"})
            with pytest.raises(McpError) as exc_info:
                await host.call_tool("db/query_db", {"sql": 1})

        assert result.content == [types.TextContent(text="ran select 1")]
        assert exc_info.value.code == types.INVALID_PARAMS

    @pytest.mark.anyio
    async def test_call_tool_needs_a_qualified_name(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            await host.connect("db")
            with pytest.raises(ValueError, match="server/tool"):
                await host.call_tool("query_db", {"sql": "select 1"})

    @pytest.mark.anyio
    async def test_unknown_server(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            with pytest.raises(KeyError):
                await host.connect("nope")
            with pytest.raises(KeyError):
                host.session("nope")

    @pytest.mark.anyio
    async def test_connect_twice_returns_the_same_connection(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            first = await host.connect("db")
            second = await host.connect("db")

        assert first is second
        assert network.connects["db"] == 1

    @pytest.mark.anyio
    async def test_connect_retries(self):
        network = MemoryNetwork(db=db_server())
        network.refusals["db"] = 2

        async with running_host(network, "db", connect_retries=3) as host:
            conn = await host.connect("db")

            assert conn.connected
        assert network.connects["db"] == 3

    @pytest.mark.anyio
    async def test_connect_gives_up(self):
        network = MemoryNetwork(db=db_server())
        network.refusals["db"] = 5

        async with running_host(network, "db", connect_retries=2) as host:
            with pytest.raises(TransportError, match="after 2 attempts"):
                await host.connect("db")

            assert "db" not in host.connections

    @pytest.mark.anyio
    async def test_disconnect(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            conn = await host.connect("db")
            await host.disconnect("db")

            assert not conn.connected
            assert host.connections == {}
            assert host.tools == {}
            with pytest.raises(KeyError):
                await host.disconnect("db")

    @pytest.mark.anyio
    async def test_leaving_the_host_disconnects(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            conn = await host.connect("db")

        assert not conn.connected

    @pytest.mark.anyio
    async def test_host_must_be_entered(self):
        host = Host(host_config("db"), transport_factory=MemoryNetwork(db=db_server()).transport)

        with pytest.raises(RuntimeError, match="async context manager"):
            await host.connect("db")


class TestNotifications:
    @pytest.mark.anyio
    async def test_list_changed_refreshes_the_catalog(self):
        server = db_server()
        network = MemoryNetwork(db=server)

        async with running_host(network, "db") as host:
            conn = await host.connect("db")
            server.add_tool(lambda: "pong", name="ping_db")

            await eventually(lambda: "ping_db" in conn.tools)
            assert "db/ping_db" in host.tools

            server.remove_tool("ping_db")
            await eventually(lambda: "ping_db" not in conn.tools)

    @pytest.mark.anyio
    async def test_resource_update_is_read_again(self):
        server = db_server()
        await server.store.put("orders", "0 orders")
        network = MemoryNetwork(db=server)
        per_uri, everywhere = Changes(), Changes()

        async with running_host(network, "db", resource_changed_callback=everywhere) as host:
            conn = await host.connect("db")
            await host.subscribe("db", "kv://orders", per_uri)

            await server.update_store("orders", "1 order")
            await eventually(lambda: len(everywhere.seen) == 1)

            assert per_uri.seen == [("db", "kv://orders", "1 order")]
            assert everywhere.seen == [("db", "kv://orders", "1 order")]
            content = conn.contents["kv://orders"].contents[0]
            assert isinstance(content, types.TextResourceContents)
            assert content.text == "1 order"

    @pytest.mark.anyio
    async def test_unsubscribe(self):
        server = db_server()
        await server.store.put("orders", "0 orders")
        network = MemoryNetwork(db=server)
        changes = Changes()

        async with running_host(network, "db", resource_changed_callback=changes) as host:
            conn = await host.connect("db")
            await host.subscribe("db", "kv://orders")
            await host.unsubscribe("db", "kv://orders")

            assert await server.update_store("orders", "1 order") == 0
            assert conn.subscriptions == {}

    @pytest.mark.anyio
    async def test_server_logs_reach_the_host(self):
        network = MemoryNetwork(db=db_server())
        logs: list[tuple[str, Any]] = []

        async def on_log(server: str, params: types.LoggingMessageNotificationParams) -> None:
            logs.append((server, params.data))

        async with running_host(network, "db", logging_callback=on_log) as host:
            await host.connect("db")
            await host.call_tool("db/chatty")

        assert logs == [("db", "working on it")]


class TestReconnect:
    @pytest.mark.anyio
    async def test_drop_marks_the_connection_stale(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            conn = await host.connect("db")
            await network.drop("db")

            await eventually(lambda: conn.stale)
            assert not conn.connected
            # the catalog is kept while stale
            assert "query_db" in conn.tools
            with pytest.raises(TransportError):
                host.session("db")
            with pytest.raises(TransportError):
                await host.call_tool("db/query_db", {"sql": "select 1"})

    @pytest.mark.anyio
    async def test_reconnect_resyncs_subscriptions(self):
        server = db_server()
        await server.store.put("orders", "0 orders")
        network = MemoryNetwork(db=server)
        changes = Changes()

        async with running_host(network, "db") as host:
            conn = await host.connect("db")
            await host.subscribe("db", "kv://orders", changes)
            await network.drop("db")
            await eventually(lambda: conn.stale)

            # missed while disconnected
            await server.update_store("orders", "5 orders")
            assert changes.seen == []

            await host.reconnect("db")

            assert conn.connected
            assert not conn.stale
            assert changes.seen == [("db", "kv://orders", "5 orders")]
            session = host.session("db")
            assert session.negotiated_session is not None

            # the new session is subscribed too
            await server.update_store("orders", "6 orders")
            await eventually(lambda: len(changes.seen) == 2)
            assert changes.seen[-1] == ("db", "kv://orders", "6 orders")

    @pytest.mark.anyio
    async def test_reconnect_forgets_removed_resource(self):
        server = db_server()
        network = MemoryNetwork(db=server)
        changes = Changes()

        async with running_host(network, "db") as host:
            conn = await host.connect("db")
            await host.subscribe("db", "kv://orders", changes)
            await network.drop("db")
            await eventually(lambda: conn.stale)

            server.remove_resource("kv://orders")
            await host.reconnect("db")

            assert conn.connected
            assert not conn.stale
            assert conn.subscriptions == {}
            assert "kv://orders" not in conn.contents
            assert "query_db" in conn.tools
            assert changes.seen == []

    @pytest.mark.anyio
    async def test_reconnect_without_subscribe_capability(self):
        server = db_server()
        network = MemoryNetwork(db=server)
        changes = Changes()

        async with running_host(network, "db") as host:
            conn = await host.connect("db")
            await host.subscribe("db", "kv://orders", changes)
            await network.drop("db")
            await eventually(lambda: conn.stale)

            server.settings.subscribe = False
            await host.reconnect("db")

            assert conn.connected
            assert not conn.stale
            assert not host.session("db").supports("resources/subscribe")
            assert conn.subscriptions == {}
            assert conn.contents == {}

    @pytest.mark.anyio
    async def test_reconnect_live_connection(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db") as host:
            conn = await host.connect("db")
            old_session = conn.session
            await host.reconnect("db")

            assert conn.connected
            assert conn.session is not old_session
            assert network.connects["db"] == 2

    @pytest.mark.anyio
    async def test_auto_reconnect(self):
        server = db_server()
        await server.store.put("orders", "0 orders")
        network = MemoryNetwork(db=server)
        changes = Changes()

        async with running_host(network, "db", auto_reconnect=True, resource_changed_callback=changes) as host:
            conn = await host.connect("db")
            await host.subscribe("db", "kv://orders")
            network.refusals["db"] = 1
            await network.drop("db")

            await eventually(lambda: conn.connected and not conn.stale)
            result = await host.call_tool("db/query_db", {"sql": "select 2"})

        assert network.connects["db"] == 3
        assert changes.seen == [("db", "kv://orders", "0 orders")]
        assert result.content == [types.TextContent(text="ran select 2")]

    @pytest.mark.anyio
    async def test_auto_reconnect_gives_up(self):
        network = MemoryNetwork(db=db_server())

        async with running_host(network, "db", auto_reconnect=True, max_reconnect_attempts=2) as host:
            conn = await host.connect("db")
            network.refusals["db"] = 10
            await network.drop("db")

            await eventually(lambda: network.connects["db"] == 3)
            await anyio.sleep(0.1)

            assert conn.stale
            assert network.connects["db"] == 3
