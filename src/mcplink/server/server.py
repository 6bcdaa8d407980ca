"""MCPServer - the decorator-style interface for mcplink servers."""

from __future__ import annotations as _annotations

import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Generic

import anyio
from pydantic import AnyUrl
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.routing import Mount, Route
from starlette.types import ASGIApp, Receive, Scope, Send

import mcplink.types as types
from mcplink.server.auth import BearerAuthBackend, RequireAuthMiddleware, TokenValidator
from mcplink.server.lowlevel.server import LifespanResultT, NotificationOptions
from mcplink.server.lowlevel.server import Server as LowLevelServer
from mcplink.server.lowlevel.server import lifespan as default_lifespan
from mcplink.server.models import InitializationOptions
from mcplink.server.prompts import Prompt, PromptManager
from mcplink.server.resources import FunctionResource, Resource, ResourceManager, StoreResource
from mcplink.server.session import ServerSession
from mcplink.server.settings import Settings
from mcplink.server.sse import SseServerTransport
from mcplink.server.storage import InMemoryStore, KeyValueStore
from mcplink.server.tools import Tool, ToolManager
from mcplink.shared.capabilities import ListKind
from mcplink.shared.context import RequestContext
from mcplink.shared.exceptions import ResourceNotFoundError
from mcplink.utilities.logging import configure_logging, get_logger

logger = get_logger(__name__)

CompletionHandler = Callable[
    [types.PromptReference | types.ResourceReference, types.CompletionArgument],
    Awaitable[types.Completion | None],
]


def lifespan_wrapper(
    app: MCPServer[LifespanResultT],
    lifespan: Callable[[MCPServer[LifespanResultT]], AbstractAsyncContextManager[LifespanResultT]],
) -> Callable[[LowLevelServer[LifespanResultT, Any]], AbstractAsyncContextManager[LifespanResultT]]:
    @asynccontextmanager
    async def wrap(_: LowLevelServer[LifespanResultT, Any]) -> AsyncIterator[LifespanResultT]:
        async with lifespan(app) as context:
            yield context

    return wrap


class SseASGIApp:
    """Exposes the SSE connection handler to Starlette as a plain ASGI app."""

    def __init__(self, handler: Callable[[Scope, Receive, Send], Awaitable[None]]):
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.handler(scope, receive, send)


class MCPServer(Generic[LifespanResultT]):
    """A decorator-based interface for building mcplink servers.

    Tools, resources and prompts are registered with decorators or the ``add_*``
    methods. Adding or removing any of them while clients are connected sends
    the matching ``list_changed`` notification to every session that negotiated
    it.

    Example:

    ```python
    server = MCPServer("catalog")

    @server.tool(description="Run a read-only query")
    def query_db(sql: str) -> list[dict[str, Any]]:
        return db.execute(sql)

    @server.resource("file:///notes.txt")
    def notes() -> str:
        return Path("notes.txt").read_text()

    server.run()
    ```

    Settings come from ``MCPLINK_*`` environment variables and can be overridden
    by keyword arguments.
    """

    def __init__(
        self,
        name: str | None = None,
        instructions: str | None = None,
        token_validator: TokenValidator | None = None,
        store: KeyValueStore | None = None,
        *,
        tools: list[Tool] | None = None,
        lifespan: Callable[[MCPServer[LifespanResultT]], AbstractAsyncContextManager[LifespanResultT]] | None = None,
        **settings: Any,
    ):
        self.settings = Settings(**settings)

        self._mcp_server = LowLevelServer(
            name=name or "mcplink",
            instructions=instructions,
            lifespan=(lifespan_wrapper(self, lifespan) if lifespan else default_lifespan),  # type: ignore
            page_size=self.settings.page_size,
        )
        self._tool_manager = ToolManager(
            warn_on_duplicate_tools=self.settings.warn_on_duplicate_tools,
            tools=tools,
            on_list_changed=lambda: self._list_changed("tools"),
        )
        self._resource_manager = ResourceManager(
            warn_on_duplicate_resources=self.settings.warn_on_duplicate_resources,
            on_list_changed=lambda: self._list_changed("resources"),
        )
        self._prompt_manager = PromptManager(
            warn_on_duplicate_prompts=self.settings.warn_on_duplicate_prompts,
            on_list_changed=lambda: self._list_changed("prompts"),
        )
        self.store: KeyValueStore = store if store is not None else InMemoryStore()

        if self.settings.require_auth and token_validator is None:
            raise ValueError("require_auth needs a token_validator")
        self._token_validator = token_validator
        self._completion_handler: CompletionHandler | None = None

        # Set up protocol handlers
        self._setup_handlers()

        # Configure logging
        configure_logging(self.settings.log_level)

    @property
    def name(self) -> str:
        return self._mcp_server.name

    @property
    def instructions(self) -> str | None:
        return self._mcp_server.instructions

    @property
    def lowlevel_server(self) -> LowLevelServer[LifespanResultT, Any]:
        return self._mcp_server

    @property
    def notification_options(self) -> NotificationOptions:
        return NotificationOptions(
            prompts_changed=self.settings.list_changed,
            resources_changed=self.settings.list_changed,
            tools_changed=self.settings.list_changed,
            resources_subscribe=self.settings.subscribe,
        )

    def create_initialization_options(self) -> InitializationOptions:
        return self._mcp_server.create_initialization_options(self.notification_options)

    def run(self) -> None:
        """Run the server over SSE. This is a synchronous function."""
        anyio.run(self.run_sse_async)

    def _setup_handlers(self) -> None:
        """Set up core protocol handlers."""
        self._mcp_server.list_tools()(self.list_tools)
        self._mcp_server.call_tool()(self.call_tool)
        self._mcp_server.list_resources()(self.list_resources)
        self._mcp_server.read_resource()(self.read_resource)
        self._mcp_server.subscribe_resource()(self._check_subscribable)
        self._mcp_server.list_prompts()(self.list_prompts)
        self._mcp_server.get_prompt()(self.get_prompt)
        self._mcp_server.completion()(self._complete)
        self._mcp_server.set_logging_level()(self._set_logging_level)

    def get_context(self) -> RequestContext[ServerSession, LifespanResultT, Any]:
        """The context of the request being handled.

        Raises:
            LookupError: when called outside of a request handler.
        """
        return self._mcp_server.request_context

    def _list_changed(self, kind: ListKind) -> None:
        if self.settings.list_changed:
            queued = self._mcp_server.notify_list_changed(kind)
            logger.debug("Queued %s list_changed for %d session(s)", kind, queued)

    def notify_resource_updated(self, uri: AnyUrl | str) -> int:
        """Tell subscribed sessions that the content of ``uri`` changed.

        Returns the number of sessions notified.
        """
        return self._mcp_server.notify_resource_updated(uri)

    async def list_tools(self) -> list[types.Tool]:
        """List all available tools."""
        return [tool.to_mcp_tool() for tool in self._tool_manager.list_tools()]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        """Call a tool by name with arguments."""
        return await self._tool_manager.call_tool(name, arguments)

    async def list_resources(self) -> list[types.Resource]:
        """List all available resources."""
        return [resource.to_mcp_resource() for resource in self._resource_manager.list_resources()]

    async def read_resource(self, uri: AnyUrl | str) -> list[types.TextResourceContents | types.BlobResourceContents]:
        """Read a resource by URI."""
        return await self._resource_manager.read_resource(uri)

    async def _check_subscribable(self, uri: AnyUrl) -> None:
        if not self._resource_manager.has_resource(uri):
            raise ResourceNotFoundError(str(uri))

    async def list_prompts(self) -> list[types.Prompt]:
        """List all available prompts."""
        return [prompt.to_mcp_prompt() for prompt in self._prompt_manager.list_prompts()]

    async def get_prompt(self, name: str, arguments: dict[str, Any] | None = None) -> types.GetPromptResult:
        """Get a prompt by name with arguments."""
        return await self._prompt_manager.render_prompt(name, arguments)

    async def _complete(
        self, ref: types.PromptReference | types.ResourceReference, argument: types.CompletionArgument
    ) -> types.Completion | None:
        if self._completion_handler is not None:
            completion = await self._completion_handler(ref, argument)
            if completion is not None:
                return completion
        match ref:
            case types.PromptReference(name=name):
                return self._prompt_manager.complete(name, argument.name, argument.value)
            case types.ResourceReference(uri=uri):
                if not self._resource_manager.has_resource(uri):
                    raise ResourceNotFoundError(uri)
                return None

    async def _set_logging_level(self, level: types.LoggingLevel) -> None:
        logger.debug("Client log level set to %s", level)

    def add_tool(
        self,
        fn: Callable[..., Any],
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> Tool:
        """Add a tool to the server.

        Args:
            fn: The function to register as a tool
            name: Optional name for the tool (defaults to function name)
            title: Optional human-readable title for the tool
            description: Optional description of what the tool does
            input_schema: Optional JSON Schema for the arguments; derived from the
                signature when omitted
        """
        return self._tool_manager.add_tool(
            fn, name=name, title=title, description=description, input_schema=input_schema
        )

    def remove_tool(self, name: str) -> bool:
        return self._tool_manager.remove_tool(name)

    def tool(
        self,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator to register a tool.

        Example:

        ```python
        @server.tool()
        def my_tool(x: int) -> str:
            return str(x)

        @server.tool()
        async def async_tool(x: int) -> str:
            await anyio.sleep(0)
            return str(x)
        ```
        """
        # Check if user passed function directly instead of calling decorator
        if callable(name):
            raise TypeError(
                "The @tool decorator was used incorrectly. Did you forget to call it? Use @tool() instead of @tool"
            )

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.add_tool(fn, name=name, title=title, description=description, input_schema=input_schema)
            return fn

        return decorator

    def completion(self):
        """Decorator to register a completion handler.

        The handler receives the reference (prompt or resource) and the argument
        being completed. Returning None falls back to the completion hints
        declared on the prompt's arguments.

        Example:

        ```python
        @server.completion()
        async def handle_completion(ref, argument):
            if isinstance(ref, ResourceReference):
                return Completion(values=["option1", "option2"])
            return None
        ```
        """

        def decorator(func: CompletionHandler) -> CompletionHandler:
            self._completion_handler = func
            return func

        return decorator

    def add_resource(self, resource: Resource) -> Resource:
        """Add a resource to the server.

        Args:
            resource: A Resource instance to add
        """
        return self._resource_manager.add_resource(resource)

    def remove_resource(self, uri: AnyUrl | str) -> bool:
        return self._resource_manager.remove_resource(uri)

    def add_store_resource(
        self,
        uri: str,
        key: str,
        *,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        mime_type: str = "text/plain",
    ) -> Resource:
        """Expose one key of the server's store as a resource, read afresh on every access."""
        return self.add_resource(
            StoreResource(
                uri=uri,  # type: ignore[arg-type]
                name=name,
                title=title,
                description=description,
                mime_type=mime_type,
                store=self.store,
                store_key=key,
            )
        )

    async def update_store(self, key: str, value: str | bytes) -> int:
        """Write ``value`` under ``key`` and notify subscribers of every resource backed by it.

        Returns the number of sessions notified.
        """
        await self.store.put(key, value)
        notified = 0
        for resource in self._resource_manager.list_resources():
            if isinstance(resource, StoreResource) and resource.store_key == key:
                notified += self.notify_resource_updated(resource.uri)
        return notified

    def resource(
        self,
        uri: str,
        *,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator to register a function as a resource.

        The function will be called when the resource is read to generate its content.
        The function can return:
        - str for text content
        - bytes for binary content
        - other types will be converted to JSON

        Args:
            uri: URI for the resource (e.g. "resource://my-resource")
            name: Optional name for the resource
            title: Optional human-readable title for the resource
            description: Optional description of the resource
            mime_type: Optional MIME type for the resource

        Example:

        ```python
        @server.resource("resource://my-resource")
        def get_data() -> str:
            return "Hello, world!"

        @server.resource("resource://my-resource")
        async def get_data() -> str:
            data = await fetch_data()
            return f"Hello, world! {data}"
        ```
        """
        # Check if user passed function directly instead of calling decorator
        if callable(uri):
            raise TypeError(
                "The @resource decorator was used incorrectly. "
                "Did you forget to call it? Use @resource('uri') instead of @resource"
            )

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            if inspect.signature(fn).parameters:
                raise ValueError(f"Resource function {fn.__name__} must not take parameters")

            resource = FunctionResource.from_function(
                fn=fn,
                uri=uri,
                name=name,
                title=title,
                description=description,
                mime_type=mime_type,
            )
            self.add_resource(resource)
            return fn

        return decorator

    def add_prompt(self, prompt: Prompt) -> Prompt:
        """Add a prompt to the server.

        Args:
            prompt: A Prompt instance to add
        """
        return self._prompt_manager.add_prompt(prompt)

    def add_prompt_template(
        self,
        name: str,
        template: str,
        *,
        title: str | None = None,
        description: str | None = None,
        completions: dict[str, list[str]] | None = None,
    ) -> Prompt:
        """Add a prompt rendered from a ``str.format`` template."""
        return self.add_prompt(
            Prompt.from_template(name, template, title=title, description=description, completions=completions)
        )

    def remove_prompt(self, name: str) -> bool:
        return self._prompt_manager.remove_prompt(name)

    def prompt(
        self,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        completions: dict[str, list[str]] | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator to register a prompt.

        Args:
            name: Optional name for the prompt (defaults to function name)
            title: Optional human-readable title for the prompt
            description: Optional description of what the prompt does
            completions: Optional completion hints per argument name

        Examples:

        ```python
        @server.prompt(completions={"table_name": ["orders", "customers"]})
        def analyze_table(table_name: str) -> list[Message]:
            schema = read_table_schema(table_name)
            return [
                {
                    "role": "user",
                    "content": f"Analyze this schema: {schema}"
                }
            ]
        ```
        """
        # Check if user passed function directly instead of calling decorator
        if callable(name):
            raise TypeError(
                "The @prompt decorator was used incorrectly. "
                "Did you forget to call it? Use @prompt() instead of @prompt"
            )

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            prompt = Prompt.from_function(
                func, name=name, title=title, description=description, completions=completions
            )
            self.add_prompt(prompt)
            return func

        return decorator

    async def run_sse_async(self) -> None:
        """Run the server using SSE transport."""
        import uvicorn

        starlette_app = self.sse_app()

        config = uvicorn.Config(
            starlette_app,
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()

    def sse_app(self) -> Starlette:
        """Return an instance of the SSE server app."""
        sse = SseServerTransport(
            self.settings.message_path,
            max_body_bytes=self.settings.max_body_bytes,
            ping_interval=self.settings.ping_interval,
        )

        async def handle_sse(scope: Scope, receive: Receive, send: Send) -> None:
            async with sse.connect_sse(scope, receive, send) as streams:
                await self._mcp_server.run(
                    streams.read_stream,
                    streams.write_stream,
                    self.create_initialization_options(),
                    session_id=streams.session_id,
                )

        sse_endpoint: ASGIApp = SseASGIApp(handle_sse)
        message_endpoint: ASGIApp = sse.handle_post_message
        middleware: list[Middleware] = []

        if self._token_validator is not None:
            # extract auth info from request (but do not require it)
            middleware.append(
                Middleware(
                    AuthenticationMiddleware,
                    backend=BearerAuthBackend(self._token_validator),
                )
            )

        if self.settings.require_auth:
            sse_endpoint = RequireAuthMiddleware(sse_endpoint, self.settings.required_scopes)
            message_endpoint = RequireAuthMiddleware(message_endpoint, self.settings.required_scopes)

        routes: list[Route | Mount] = [
            Route(self.settings.sse_path, endpoint=sse_endpoint, methods=["GET"]),
            Mount(self.settings.message_path, app=message_endpoint),
        ]

        # Create Starlette app with routes and middleware
        return Starlette(debug=self.settings.debug, routes=routes, middleware=middleware)
