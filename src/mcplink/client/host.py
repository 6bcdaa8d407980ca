"""
Host manages one client session per configured server.

Tools, resources, and prompts of every connected server are cached per
connection and refreshed when the server announces a list change. Tools are
also exposed as one aggregated view keyed by ``server/tool``.

When a channel drops, the connection stays known to the host but is marked
stale. ``reconnect`` (or the host itself, with ``auto_reconnect``) opens a new
channel, negotiates again, re-subscribes every remembered resource and reads
it again so callers catch up on whatever they missed.
"""

import logging
import subprocess
import weakref
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from types import TracebackType
from typing import Any, Protocol, TypeAlias

import anyio
import anyio.abc
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import AnyUrl
from typing_extensions import Self

import mcplink.types as types
from mcplink.client.config import HostConfig, ServerConfig
from mcplink.client.session import ClientSession
from mcplink.client.sse import sse_client
from mcplink.shared.capabilities import ListKind
from mcplink.shared.exceptions import ConnectionClosedError, McpError, RequestTimeoutError, TransportError
from mcplink.shared.message import SessionMessage
from mcplink.utilities.logging import redact_sensitive_data

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_RETRIES = 3
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_BACKOFF = 0.5
MAX_RECONNECT_BACKOFF = 30.0

TransportStreams: TypeAlias = tuple[
    MemoryObjectReceiveStream[SessionMessage | Exception],
    MemoryObjectSendStream[SessionMessage],
]
TransportFactory: TypeAlias = Callable[[ServerConfig], AbstractAsyncContextManager[TransportStreams]]


class ResourceChangedFnT(Protocol):
    async def __call__(self, server: str, uri: AnyUrl, result: types.ReadResourceResult) -> None: ...


class ServerLoggingFnT(Protocol):
    async def __call__(self, server: str, params: types.LoggingMessageNotificationParams) -> None: ...


@asynccontextmanager
async def sse_transport(params: ServerConfig) -> AsyncIterator[TransportStreams]:
    async with sse_client(
        params.url,
        headers=params.headers,
        timeout=params.timeout,
        sse_read_timeout=params.sse_read_timeout,
    ) as streams:
        yield streams


class ServerConnection:
    """Everything the host knows about one server, across reconnects."""

    def __init__(self, name: str, params: ServerConfig, host: "Host") -> None:
        self.name = name
        self.params = params
        self.session: ClientSession | None = None
        self.stale = False
        self.process: anyio.abc.Process | None = None

        self.subscriptions: dict[str, ResourceChangedFnT | None] = {}
        self.contents: dict[str, types.ReadResourceResult] = {}

        self.tools: dict[str, types.Tool] = {}
        self.resources: dict[str, types.Resource] = {}
        self.prompts: dict[str, types.Prompt] = {}

        self._host = weakref.ref(host)
        self._scope: anyio.CancelScope | None = None
        self._done: anyio.Event | None = None
        self._closing = False
        self._restarting = False

    @property
    def connected(self) -> bool:
        return self.session is not None and not self.session.closed

    def require_session(self) -> ClientSession:
        if self.session is None or self.session.closed:
            raise TransportError(f"Server {self.name!r} is not connected")
        return self.session

    async def refresh_catalog(self, kind: ListKind) -> None:
        session = self.require_session()
        if not session.supports(f"{kind}/list"):
            return
        match kind:
            case "tools":
                self.tools = {tool.name: tool for tool in await session.list_all_tools()}
            case "resources":
                self.resources = {str(resource.uri): resource for resource in await session.list_all_resources()}
            case "prompts":
                self.prompts = {prompt.name: prompt for prompt in await session.list_all_prompts()}
        logger.debug("Refreshed %s catalog of %s", kind, self.name)

    def forget(self, uri: str) -> None:
        self.subscriptions.pop(uri, None)
        self.contents.pop(uri, None)

    async def reread(self, uri: str) -> types.ReadResourceResult:
        """Read a subscribed resource and hand the contents to its callbacks."""
        result = await self.require_session().read_resource(uri)
        self.contents[uri] = result
        host = self._host()
        url = AnyUrl(uri)
        callback = self.subscriptions.get(uri)
        if callback is not None:
            await callback(self.name, url, result)
        if host is not None and host.resource_changed_callback is not None:
            await host.resource_changed_callback(self.name, url, result)
        return result

    async def _on_list_changed(self, kind: ListKind) -> None:
        self._spawn(self.refresh_catalog, kind)

    async def _on_resource_updated(self, uri: AnyUrl) -> None:
        if str(uri) in self.subscriptions:
            self._spawn(self.reread, str(uri))

    async def _on_log(self, params: types.LoggingMessageNotificationParams) -> None:
        host = self._host()
        if host is not None and host.logging_callback is not None:
            await host.logging_callback(self.name, params)
        else:
            logger.debug("[%s] %s: %s", self.name, params.level, params.data)

    def _spawn(self, func: Callable[..., Any], *args: Any) -> None:
        # Callbacks run inside the session's receive loop; requests have to wait elsewhere.
        host = self._host()
        if host is None:
            return
        host._start_background(self, func, *args)


class Host:
    """Client host for a set of servers, addressed by their configured names.

    Example:
        async with Host(HostConfig.from_file("servers.json")) as host:
            await host.connect("db")
            result = await host.call_tool("db/query_db", {"sql": "select 1"})
    """

    def __init__(
        self,
        config: HostConfig,
        *,
        auto_reconnect: bool = False,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        reconnect_backoff: float = DEFAULT_RECONNECT_BACKOFF,
        connect_retries: int = DEFAULT_CONNECT_RETRIES,
        client_info: types.Implementation | None = None,
        resource_changed_callback: ResourceChangedFnT | None = None,
        logging_callback: ServerLoggingFnT | None = None,
        transport_factory: TransportFactory = sse_transport,
    ) -> None:
        self.config = config
        self.auto_reconnect = auto_reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_backoff = reconnect_backoff
        self.connect_retries = connect_retries
        self.client_info = client_info
        self.resource_changed_callback = resource_changed_callback
        self.logging_callback = logging_callback
        self._transport_factory = transport_factory
        self._connections: dict[str, ServerConnection] = {}
        self._task_group: anyio.abc.TaskGroup | None = None

    async def __aenter__(self) -> Self:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        assert self._task_group is not None
        try:
            with anyio.CancelScope(shield=True):
                for name in list(self._connections):
                    await self.disconnect(name)
            self._task_group.cancel_scope.cancel()
        finally:
            result = await self._task_group.__aexit__(exc_type, exc_val, exc_tb)
            self._task_group = None
        return result

    @property
    def connections(self) -> dict[str, ServerConnection]:
        return dict(self._connections)

    @property
    def tools(self) -> dict[str, types.Tool]:
        """Tools of every connected server, keyed by ``server/tool``."""
        return {
            f"{conn.name}/{tool_name}": tool
            for conn in self._connections.values()
            for tool_name, tool in conn.tools.items()
        }

    def session(self, name: str) -> ClientSession:
        """The live session for ``name``; raises TransportError while it is stale."""
        return self._connection(name).require_session()

    async def connect(self, name: str) -> ServerConnection:
        """Launch (if configured), open the channel, negotiate and fill the catalogs."""
        self._require_task_group()
        if name in self._connections:
            logger.warning("Server %s is already connected", name)
            return self._connections[name]
        params = self.config.servers.get(name)
        if params is None:
            raise KeyError(f"Unknown server: {name}")

        conn = ServerConnection(name, params, self)
        self._connections[name] = conn
        try:
            await self._launch(conn)
            await self._open_with_retries(conn, self.connect_retries)
        except BaseException:
            self._connections.pop(name, None)
            await self._terminate(conn)
            raise
        return conn

    async def disconnect(self, name: str) -> None:
        conn = self._connections.pop(name, None)
        if conn is None:
            raise KeyError(f"Unknown server: {name}")
        conn._closing = True
        await self._stop_session(conn)
        await self._terminate(conn)
        logger.info("Disconnected from %s", name)

    async def reconnect(self, name: str) -> ServerConnection:
        """Open a fresh channel to ``name`` and resync its state."""
        conn = self._connection(name)
        conn._restarting = True
        try:
            await self._stop_session(conn)
            await self._open_with_retries(conn, self.connect_retries)
        finally:
            conn._restarting = False
        return conn

    async def subscribe(self, name: str, uri: AnyUrl | str, callback: ResourceChangedFnT | None = None) -> None:
        """Subscribe to a resource; the subscription survives reconnects."""
        conn = self._connection(name)
        key = str(AnyUrl(str(uri)))
        await conn.require_session().subscribe_resource(key)
        conn.subscriptions[key] = callback

    async def unsubscribe(self, name: str, uri: AnyUrl | str) -> None:
        conn = self._connection(name)
        key = str(AnyUrl(str(uri)))
        conn.forget(key)
        await conn.require_session().unsubscribe_resource(key)

    async def call_tool(self, qualified_name: str, arguments: dict[str, Any] | None = None) -> types.CallToolResult:
        """Call a tool by its ``server/tool`` name."""
        name, sep, tool_name = qualified_name.partition("/")
        if not sep or not tool_name:
            raise ValueError(f"Tool name must be qualified as server/tool: {qualified_name!r}")
        return await self.session(name).call_tool(tool_name, arguments)

    def _connection(self, name: str) -> ServerConnection:
        try:
            return self._connections[name]
        except KeyError:
            raise KeyError(f"Unknown server: {name}") from None

    def _require_task_group(self) -> anyio.abc.TaskGroup:
        if self._task_group is None:
            raise RuntimeError("Host must be used as an async context manager")
        return self._task_group

    def _start_background(self, conn: ServerConnection, func: Callable[..., Any], *args: Any) -> None:
        async def run() -> None:
            try:
                await func(*args)
            except Exception:
                logger.exception("Background work for %s failed", conn.name)

        self._require_task_group().start_soon(run)

    async def _launch(self, conn: ServerConnection) -> None:
        argv = conn.params.launch_argv
        if argv is None:
            return
        logger.info("Starting server %s: %s", conn.name, argv)
        logger.debug("Environment overrides for %s: %s", conn.name, redact_sensitive_data(conn.params.env))
        conn.process = await anyio.open_process(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=None,
            stderr=None,
            env=conn.params.launch_env,
        )

    async def _terminate(self, conn: ServerConnection) -> None:
        process, conn.process = conn.process, None
        if process is None:
            return
        if process.returncode is None:
            process.terminate()
        with anyio.CancelScope(shield=True):
            await process.aclose()

    async def _open_with_retries(self, conn: ServerConnection, attempts: int) -> None:
        delay = self.reconnect_backoff
        for attempt in range(1, max(attempts, 1) + 1):
            try:
                await self._require_task_group().start(self._run_session, conn)
                return
            except Exception as exc:
                if attempt >= attempts:
                    raise TransportError(f"Could not connect to {conn.name} after {attempt} attempts: {exc}") from exc
                logger.warning("Connecting to %s failed (attempt %d): %s", conn.name, attempt, exc)
            await anyio.sleep(delay)
            delay = min(delay * 2, MAX_RECONNECT_BACKOFF)

    async def _stop_session(self, conn: ServerConnection) -> None:
        if conn._scope is not None:
            conn._scope.cancel()
        if conn._done is not None:
            await conn._done.wait()

    async def _run_session(
        self, conn: ServerConnection, *, task_status: anyio.abc.TaskStatus[None] = anyio.TASK_STATUS_IGNORED
    ) -> None:
        """One life of a connection: from opening the channel until it closes."""
        conn._done = done = anyio.Event()
        started = False
        try:
            async with (
                self._transport_factory(conn.params) as (read_stream, write_stream),
                ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=conn.params.read_timeout,
                    logging_callback=conn._on_log,
                    resource_updated_callback=conn._on_resource_updated,
                    list_changed_callback=conn._on_list_changed,
                    client_info=self.client_info,
                    capabilities=conn.params.client_capabilities,
                ) as session,
            ):
                resync = conn.stale or bool(conn.subscriptions)
                await self._establish(conn, session, resync=resync)
                started = True
                task_status.started()

                with anyio.CancelScope() as scope:
                    conn._scope = scope
                    await session.wait_closed()
                conn._scope = None
                if session.transport_error is not None:
                    logger.warning("Lost connection to %s: %s", conn.name, session.transport_error)
        except Exception:
            if not started:
                raise
            logger.exception("Connection to %s failed", conn.name)
        finally:
            conn._scope = None
            conn.session = None
            done.set()

        if conn._closing or conn._restarting:
            return
        conn.stale = True
        if self.auto_reconnect:
            self._require_task_group().start_soon(self._auto_reconnect, conn)

    async def _establish(self, conn: ServerConnection, session: ClientSession, *, resync: bool) -> None:
        negotiated = await session.initialize()
        conn.session = session
        for kind in ("tools", "resources", "prompts"):
            await conn.refresh_catalog(kind)
        if resync:
            await self._resync(conn, session)
        conn.stale = False
        logger.info(
            "Connected to %s (%s, protocol %s)",
            conn.name,
            negotiated.peer_info.name,
            negotiated.protocol_version,
        )

    async def _resync(self, conn: ServerConnection, session: ClientSession) -> None:
        """Re-subscribe to and re-read every remembered URI.

        A URI the server no longer serves, or can no longer subscribe to, is forgotten
        so that the connection still comes up.
        """
        if not session.supports("resources/subscribe"):
            if conn.subscriptions:
                logger.warning(
                    "%s no longer offers resource subscriptions; forgetting %s", conn.name, list(conn.subscriptions)
                )
            for uri in list(conn.subscriptions):
                conn.forget(uri)
            return
        for uri in list(conn.subscriptions):
            try:
                await session.subscribe_resource(uri)
                await conn.reread(uri)
            except (ConnectionClosedError, RequestTimeoutError):
                raise
            except McpError as exc:
                logger.warning("Forgetting subscription to %s on %s: %s", uri, conn.name, exc)
                conn.forget(uri)

    async def _auto_reconnect(self, conn: ServerConnection) -> None:
        delay = self.reconnect_backoff
        for attempt in range(1, self.max_reconnect_attempts + 1):
            await anyio.sleep(delay)
            if conn._closing or not conn.stale or self._connections.get(conn.name) is not conn:
                return
            try:
                await self._require_task_group().start(self._run_session, conn)
            except Exception as exc:
                logger.warning("Reconnecting to %s failed (attempt %d): %s", conn.name, attempt, exc)
                delay = min(delay * 2, MAX_RECONNECT_BACKOFF)
            else:
                logger.info("Reconnected to %s", conn.name)
                return
        logger.error("Giving up on %s after %d reconnect attempts", conn.name, self.max_reconnect_attempts)
