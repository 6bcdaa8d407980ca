"""
mcplink Server Module

This module provides the protocol-level server: a table of request handlers keyed
by request type, the subscription dispatcher, and the loop that serves one session.

Usage:
1. Create a Server instance:
   server = Server("your_server_name")

2. Define request handlers using decorators:
   @server.list_tools()
   async def handle_list_tools() -> list[types.Tool]:
       # Implementation

   @server.call_tool()
   async def handle_call_tool(name: str, arguments: dict[str, Any]) -> types.CallToolResult:
       # Implementation

   @server.read_resource()
   async def handle_read_resource(uri: AnyUrl) -> list[types.TextResourceContents | types.BlobResourceContents]:
       # Implementation

3. Run the server over a pair of streams:
   async def main():
       async with create_client_server_memory_streams() as (client_streams, server_streams):
           await server.run(
               server_streams[0],
               server_streams[1],
               server.create_initialization_options(),
           )

List handlers return the full catalog; the server pages it with an opaque cursor.
Subscriptions are tracked here, so a ``subscribe_resource`` handler only has to
check that the resource exists.
"""

from __future__ import annotations as _annotations

import contextvars
import importlib.metadata
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from typing import Any, Generic

import anyio
from pydantic import AnyUrl
from typing_extensions import TypeVar

import mcplink.types as types
from mcplink.server.models import InitializationOptions, ReadStream, WriteStream
from mcplink.server.pagination import DEFAULT_PAGE_SIZE, paginate
from mcplink.server.session import ServerSession
from mcplink.server.subscriptions import SubscriptionDispatcher
from mcplink.shared.capabilities import ListKind
from mcplink.shared.context import RequestContext
from mcplink.shared.exceptions import ConnectionClosedError, McpError, ProtocolError, TransportError
from mcplink.shared.message import ServerMessageMetadata
from mcplink.shared.session import RequestResponder

logger = logging.getLogger(__name__)

LifespanResultT = TypeVar("LifespanResultT", default=Any)
RequestT = TypeVar("RequestT", default=Any)

ResourceContents = types.TextResourceContents | types.BlobResourceContents

# This will be properly typed in each Server instance's context
request_ctx: contextvars.ContextVar[RequestContext[ServerSession, Any, Any]] = contextvars.ContextVar("request_ctx")


class NotificationOptions:
    def __init__(
        self,
        prompts_changed: bool = False,
        resources_changed: bool = False,
        tools_changed: bool = False,
        resources_subscribe: bool = True,
    ):
        self.prompts_changed = prompts_changed
        self.resources_changed = resources_changed
        self.tools_changed = tools_changed
        self.resources_subscribe = resources_subscribe


@asynccontextmanager
async def lifespan(_: Server[LifespanResultT, RequestT]) -> AsyncIterator[dict[str, Any]]:
    """Default lifespan context manager that does nothing.

    Args:
        server: The server instance this lifespan is managing

    Returns:
        An empty context object
    """
    yield {}


class Server(Generic[LifespanResultT, RequestT]):
    def __init__(
        self,
        name: str,
        version: str | None = None,
        instructions: str | None = None,
        lifespan: Callable[
            [Server[LifespanResultT, RequestT]],
            AbstractAsyncContextManager[LifespanResultT],
        ] = lifespan,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.name = name
        self.version = version
        self.instructions = instructions
        self.lifespan = lifespan
        self.page_size = page_size
        self.request_handlers: dict[type, Callable[..., Awaitable[types.ServerResult]]] = {
            types.PingRequest: _ping_handler,
        }
        self.notification_handlers: dict[type, Callable[..., Awaitable[None]]] = {}
        self.subscriptions = SubscriptionDispatcher()
        logger.debug("Initializing server %r", name)

    def create_initialization_options(
        self,
        notification_options: NotificationOptions | None = None,
        experimental_capabilities: dict[str, dict[str, Any]] | None = None,
    ) -> InitializationOptions:
        """Create initialization options from this server instance."""
        return InitializationOptions(
            server_name=self.name,
            server_version=self.version or _package_version(),
            capabilities=self.get_capabilities(
                notification_options or NotificationOptions(),
                experimental_capabilities or {},
            ),
            instructions=self.instructions,
        )

    def get_capabilities(
        self,
        notification_options: NotificationOptions,
        experimental_capabilities: dict[str, dict[str, Any]],
    ) -> types.ServerCapabilities:
        """Advertise a feature for every method family that has a handler registered."""
        handlers = self.request_handlers
        resources = None
        if types.ListResourcesRequest in handlers:
            resources = types.ResourcesCapability(
                subscribe=notification_options.resources_subscribe and types.SubscribeRequest in handlers,
                listChanged=notification_options.resources_changed,
            )
        return types.ServerCapabilities(
            prompts=types.PromptsCapability(listChanged=notification_options.prompts_changed)
            if types.ListPromptsRequest in handlers
            else None,
            resources=resources,
            tools=types.ToolsCapability(listChanged=notification_options.tools_changed)
            if types.ListToolsRequest in handlers
            else None,
            logging=types.LoggingCapability() if types.SetLevelRequest in handlers else None,
            completions=types.CompletionsCapability() if types.CompleteRequest in handlers else None,
            experimental=experimental_capabilities or None,
        )

    @property
    def request_context(
        self,
    ) -> RequestContext[ServerSession, LifespanResultT, RequestT]:
        """If called outside of a request context, this will raise a LookupError."""
        return request_ctx.get()

    def notify_resource_updated(self, uri: AnyUrl | str) -> int:
        """Tell every subscribed session that ``uri`` changed."""
        return self.subscriptions.notify_resource_updated(uri)

    def notify_list_changed(self, kind: ListKind) -> int:
        """Tell every session that negotiated it that the ``kind`` catalog changed."""
        return self.subscriptions.notify_list_changed(kind)

    def _paged(self, request_type: type, build: Callable[[list[Any], str | None], types.ServerResult]):
        """Register a list handler returning the full catalog; the reply carries one page of it."""

        def decorator(func: Callable[[], Awaitable[list[Any]]]):
            logger.debug("Registering handler for %s", request_type.__name__)

            async def handler(req: Any):
                cursor = req.params.cursor if req.params is not None else None
                return build(*paginate(await func(), cursor, self.page_size))

            self.request_handlers[request_type] = handler
            return func

        return decorator

    def list_prompts(self):
        return self._paged(
            types.ListPromptsRequest,
            lambda page, cursor: types.ServerResult(types.ListPromptsResult(prompts=page, nextCursor=cursor)),
        )

    def get_prompt(self):
        def decorator(
            func: Callable[[str, dict[str, str] | None], Awaitable[types.GetPromptResult]],
        ):
            logger.debug("Registering handler for GetPromptRequest")

            async def handler(req: types.GetPromptRequest):
                prompt_get = await func(req.params.name, req.params.arguments)
                return types.ServerResult(prompt_get)

            self.request_handlers[types.GetPromptRequest] = handler
            return func

        return decorator

    def list_resources(self):
        return self._paged(
            types.ListResourcesRequest,
            lambda page, cursor: types.ServerResult(types.ListResourcesResult(resources=page, nextCursor=cursor)),
        )

    def read_resource(self):
        def decorator(func: Callable[[AnyUrl], Awaitable[list[ResourceContents]]]):
            logger.debug("Registering handler for ReadResourceRequest")

            async def handler(req: types.ReadResourceRequest):
                contents = await func(req.params.uri)
                return types.ServerResult(types.ReadResourceResult(contents=contents))

            self.request_handlers[types.ReadResourceRequest] = handler
            return func

        return decorator

    def set_logging_level(self):
        def decorator(func: Callable[[types.LoggingLevel], Awaitable[None]]):
            logger.debug("Registering handler for SetLevelRequest")

            async def handler(req: types.SetLevelRequest):
                request_ctx.get().session.logging_level = req.params.level
                await func(req.params.level)
                return types.ServerResult(types.EmptyResult())

            self.request_handlers[types.SetLevelRequest] = handler
            return func

        return decorator

    def subscribe_resource(self):
        """Register the check run before a session is subscribed to a URI.

        The handler raises (typically ``ResourceNotFoundError``) to refuse the
        subscription. Subscribing twice is a no-op.
        """

        def decorator(func: Callable[[AnyUrl], Awaitable[None]]):
            logger.debug("Registering handler for SubscribeRequest")

            async def handler(req: types.SubscribeRequest):
                await func(req.params.uri)
                self.subscriptions.subscribe(request_ctx.get().session, req.params.uri)
                return types.ServerResult(types.EmptyResult())

            self.request_handlers[types.SubscribeRequest] = handler
            if types.UnsubscribeRequest not in self.request_handlers:
                self.request_handlers[types.UnsubscribeRequest] = _unsubscribe_handler(self, None)
            return func

        return decorator

    def unsubscribe_resource(self):
        """Register a hook run after a session is unsubscribed from a URI."""

        def decorator(func: Callable[[AnyUrl], Awaitable[None]]):
            logger.debug("Registering handler for UnsubscribeRequest")
            self.request_handlers[types.UnsubscribeRequest] = _unsubscribe_handler(self, func)
            return func

        return decorator

    def list_tools(self):
        return self._paged(
            types.ListToolsRequest,
            lambda page, cursor: types.ServerResult(types.ListToolsResult(tools=page, nextCursor=cursor)),
        )

    def call_tool(self):
        def decorator(
            func: Callable[[str, dict[str, Any]], Awaitable[types.CallToolResult]],
        ):
            logger.debug("Registering handler for CallToolRequest")

            async def handler(req: types.CallToolRequest):
                result = await func(req.params.name, req.params.arguments or {})
                return types.ServerResult(result)

            self.request_handlers[types.CallToolRequest] = handler
            return func

        return decorator

    def completion(self):
        """Provides completions for prompt arguments and resource references"""

        def decorator(
            func: Callable[
                [types.PromptReference | types.ResourceReference, types.CompletionArgument],
                Awaitable[types.Completion | None],
            ],
        ):
            logger.debug("Registering handler for CompleteRequest")

            async def handler(req: types.CompleteRequest):
                completion = await func(req.params.ref, req.params.argument)
                return types.ServerResult(
                    types.CompleteResult(
                        completion=completion
                        if completion is not None
                        else types.Completion(values=[], total=None, hasMore=None),
                    )
                )

            self.request_handlers[types.CompleteRequest] = handler
            return func

        return decorator

    async def run(
        self,
        read_stream: ReadStream,
        write_stream: WriteStream,
        initialization_options: InitializationOptions,
        # When False, exceptions are returned as messages to the client.
        # When True, exceptions are raised, which will cause the server to shut down
        # but also make tracing exceptions much easier during testing and when using
        # in-process servers.
        raise_exceptions: bool = False,
        session_id: str | None = None,
    ):
        async with AsyncExitStack() as stack:
            lifespan_context = await stack.enter_async_context(self.lifespan(self))
            session = await stack.enter_async_context(
                ServerSession(read_stream, write_stream, initialization_options, session_id=session_id)
            )
            outbox = self.subscriptions.register(session)

            try:
                async with anyio.create_task_group() as tg:
                    tg.start_soon(outbox.pump)
                    async for message in session.incoming_messages:
                        logger.debug("Received message: %s", message)

                        tg.start_soon(
                            self._handle_message,
                            message,
                            session,
                            lifespan_context,
                            raise_exceptions,
                        )
                    # The channel is gone; nothing left can reach the client.
                    tg.cancel_scope.cancel()
            finally:
                self.subscriptions.unregister(session)

    async def _handle_message(
        self,
        message: RequestResponder[types.ClientRequest, types.ServerResult] | types.ClientNotification | Exception,
        session: ServerSession,
        lifespan_context: LifespanResultT,
        raise_exceptions: bool = False,
    ):
        match message:
            case RequestResponder(request=types.ClientRequest(root=req)) as responder:
                with responder:
                    await self._handle_request(message, req, session, lifespan_context, raise_exceptions)
            case types.ClientNotification(root=notify):
                await self._handle_notification(notify)
            case ProtocolError() | TransportError():
                logger.warning("Session %s ending: %s", session.session_id, message)
            case Exception():
                logger.error(f"Received exception from stream: {message}")
                if raise_exceptions:
                    raise message

    async def _handle_request(
        self,
        message: RequestResponder[types.ClientRequest, types.ServerResult],
        req: Any,
        session: ServerSession,
        lifespan_context: LifespanResultT,
        raise_exceptions: bool,
    ):
        logger.info("Processing request of type %s", type(req).__name__)
        if handler := self.request_handlers.get(type(req)):  # type: ignore
            logger.debug("Dispatching request of type %s", type(req).__name__)

            token = None
            try:
                # Extract request context from message metadata
                request_data = None
                if message.message_metadata is not None and isinstance(
                    message.message_metadata, ServerMessageMetadata
                ):
                    request_data = message.message_metadata.request_context

                # Set our global state that can be retrieved via
                # app.get_request_context()
                token = request_ctx.set(
                    RequestContext(
                        message.request_id,
                        message.request_meta,
                        session,
                        lifespan_context,
                        request=request_data,
                    )
                )
                response = await handler(req)
            except McpError as err:
                response = err.error
            except Exception as err:
                if raise_exceptions:
                    raise err
                logger.exception("Error handling %s", type(req).__name__)
                response = types.ErrorData(code=types.INTERNAL_ERROR, message=str(err), data=None)
            finally:
                # Reset the global state after we are done
                if token is not None:
                    request_ctx.reset(token)

            try:
                await message.respond(response)
            except ConnectionClosedError:
                logger.debug("Client went away before request %s was answered", message.request_id)
                return
        else:
            await message.respond(
                types.ErrorData(
                    code=types.METHOD_NOT_FOUND,
                    message=f"Method not found: {req.method}",
                )
            )

        logger.debug("Response sent")

    async def _handle_notification(self, notify: Any):
        if handler := self.notification_handlers.get(type(notify)):  # type: ignore
            logger.debug("Dispatching notification of type %s", type(notify).__name__)

            try:
                await handler(notify)
            except Exception:
                logger.exception("Uncaught exception in notification handler")


def _unsubscribe_handler(
    server: Server[Any, Any], hook: Callable[[AnyUrl], Awaitable[None]] | None
) -> Callable[[types.UnsubscribeRequest], Awaitable[types.ServerResult]]:
    async def handler(req: types.UnsubscribeRequest):
        server.subscriptions.unsubscribe(request_ctx.get().session, req.params.uri)
        if hook is not None:
            await hook(req.params.uri)
        return types.ServerResult(types.EmptyResult())

    return handler


def _package_version() -> str:
    try:
        return importlib.metadata.version("mcplink")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


async def _ping_handler(_request: types.PingRequest) -> types.ServerResult:
    return types.ServerResult(types.EmptyResult())
