from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, Protocol, TypeVar

import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import AnyUrl

import mcplink.types as types
from mcplink.shared.capabilities import ListKind, NegotiatedCapabilities, NegotiatedSession
from mcplink.shared.exceptions import (
    CapabilityError,
    IncompatibleVersionError,
    McpError,
    NegotiationTimeoutError,
    RequestTimeoutError,
)
from mcplink.shared.message import SessionMessage
from mcplink.shared.router import DEFAULT_TOMBSTONE_TTL
from mcplink.shared.session import BaseSession, RequestResponder
from mcplink.shared.version import SUPPORTED_PROTOCOL_VERSIONS

DEFAULT_CLIENT_INFO = types.Implementation(name="mcplink", version="0.1.0")
DEFAULT_INITIALIZE_TIMEOUT = 30.0

# Everything this client knows how to use; the server's declaration narrows it.
DEFAULT_CLIENT_CAPABILITIES = types.ClientCapabilities(
    resources=types.ResourcesCapability(subscribe=True, listChanged=True),
    tools=types.ToolsCapability(listChanged=True),
    prompts=types.PromptsCapability(listChanged=True),
    completions=types.CompletionsCapability(),
    logging=types.LoggingCapability(),
)

logger = logging.getLogger(__name__)

_LIST_CHANGED_KINDS: dict[type, ListKind] = {
    types.ResourceListChangedNotification: "resources",
    types.ToolListChangedNotification: "tools",
    types.PromptListChangedNotification: "prompts",
}


class LoggingFnT(Protocol):
    async def __call__(
        self,
        params: types.LoggingMessageNotificationParams,
    ) -> None: ...


class ResourceUpdatedFnT(Protocol):
    async def __call__(self, uri: AnyUrl) -> None: ...


class ListChangedFnT(Protocol):
    async def __call__(self, kind: ListKind) -> None: ...


class MessageHandlerFnT(Protocol):
    async def __call__(
        self,
        message: RequestResponder[types.ServerRequest, types.ClientResult] | types.ServerNotification | Exception,
    ) -> None: ...


async def _default_message_handler(
    message: RequestResponder[types.ServerRequest, types.ClientResult] | types.ServerNotification | Exception,
) -> None:
    await anyio.lowlevel.checkpoint()


async def _default_logging_callback(
    params: types.LoggingMessageNotificationParams,
) -> None:
    pass


ItemT = TypeVar("ItemT")


class ClientSession(
    BaseSession[
        types.ClientRequest,
        types.ClientNotification,
        types.ClientResult,
        types.ServerRequest,
        types.ServerNotification,
    ]
):
    """The client end of one session.

    Once :meth:`initialize` has completed, every request is checked against the
    negotiated capabilities before it is sent; a method outside them raises
    :class:`~mcplink.shared.exceptions.CapabilityError` without touching the wire.

    Notification callbacks run inline in the receive loop, so they observe
    notifications and responses in the order they were received. A callback
    that blocks holds up the whole session, so it must not wait on a request
    sent over this same session; hand such work to a task instead.
    """

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        read_timeout_seconds: timedelta | None = None,
        logging_callback: LoggingFnT | None = None,
        resource_updated_callback: ResourceUpdatedFnT | None = None,
        list_changed_callback: ListChangedFnT | None = None,
        message_handler: MessageHandlerFnT | None = None,
        client_info: types.Implementation | None = None,
        capabilities: types.ClientCapabilities | None = None,
        initialize_timeout: float = DEFAULT_INITIALIZE_TIMEOUT,
        tombstone_ttl: float = DEFAULT_TOMBSTONE_TTL,
    ) -> None:
        super().__init__(
            read_stream,
            write_stream,
            types.ServerRequest,
            types.ServerNotification,
            read_timeout_seconds=read_timeout_seconds,
            tombstone_ttl=tombstone_ttl,
        )
        self._client_info = client_info or DEFAULT_CLIENT_INFO
        self._capabilities = capabilities or DEFAULT_CLIENT_CAPABILITIES
        self._initialize_timeout = initialize_timeout
        self._logging_callback = logging_callback or _default_logging_callback
        self._resource_updated_callback = resource_updated_callback
        self._list_changed_callback = list_changed_callback
        self._message_handler = message_handler or _default_message_handler
        self._resource_callbacks: dict[str, list[ResourceUpdatedFnT]] = {}
        self._server_capabilities: types.ServerCapabilities | None = None
        self._negotiated_session: NegotiatedSession | None = None

    @property
    def negotiated_session(self) -> NegotiatedSession | None:
        return self._negotiated_session

    async def initialize(self) -> NegotiatedSession:
        """Run the ``initialize`` handshake and freeze the negotiated capabilities.

        Raises:
            NegotiationTimeoutError: the server did not answer within ``initialize_timeout``.
            IncompatibleVersionError: the server answered with a protocol version
                this client does not speak.
        """
        try:
            result = await self.send_request(
                types.ClientRequest(
                    types.InitializeRequest(
                        params=types.InitializeRequestParams(
                            protocolVersion=types.LATEST_PROTOCOL_VERSION,
                            capabilities=self._capabilities,
                            clientInfo=self._client_info,
                        ),
                    )
                ),
                types.InitializeResult,
                request_read_timeout_seconds=timedelta(seconds=self._initialize_timeout),
            )
        except RequestTimeoutError:
            raise NegotiationTimeoutError(self._initialize_timeout) from None

        if result.protocolVersion not in SUPPORTED_PROTOCOL_VERSIONS:
            error = IncompatibleVersionError(types.LATEST_PROTOCOL_VERSION, result.protocolVersion)
            await self._fail(error)
            raise error

        self._server_capabilities = result.capabilities
        self._negotiated = NegotiatedCapabilities.negotiate(self._capabilities, result.capabilities)
        self._negotiated_session = NegotiatedSession(
            protocol_version=result.protocolVersion,
            capabilities=self._negotiated,
            peer_info=result.serverInfo,
            instructions=result.instructions,
        )
        logger.info(
            "Initialized session with %s %s (protocol %s)",
            result.serverInfo.name,
            result.serverInfo.version,
            result.protocolVersion,
        )

        await self.send_notification(types.ClientNotification(types.InitializedNotification()))

        return self._negotiated_session

    def get_server_capabilities(self) -> types.ServerCapabilities | None:
        """Return the server capabilities received during initialization.

        Returns None if the session has not been initialized yet.
        """
        return self._server_capabilities

    def supports(self, method: str) -> bool:
        """Whether ``method`` is within the negotiated capabilities."""
        return self._negotiated is not None and self._negotiated.supports(method)

    def _require(self, method: str) -> None:
        # Only initialize and ping may precede a successful handshake
        if self._fatal_error is not None:
            raise self._fatal_error
        if self._negotiated is None:
            raise CapabilityError(method)
        self._negotiated.require(method)

    async def send_ping(self) -> types.EmptyResult:
        """Send a ping request."""
        return await self.send_request(
            types.ClientRequest(types.PingRequest()),
            types.EmptyResult,
        )

    async def set_logging_level(self, level: types.LoggingLevel) -> types.EmptyResult:
        """Send a logging/setLevel request."""
        self._require("logging/setLevel")
        return await self.send_request(
            types.ClientRequest(
                types.SetLevelRequest(
                    params=types.SetLevelRequestParams(level=level),
                )
            ),
            types.EmptyResult,
        )

    async def list_resources(self, cursor: str | None = None) -> types.ListResourcesResult:
        """Send a resources/list request."""
        self._require("resources/list")
        return await self.send_request(
            types.ClientRequest(types.ListResourcesRequest(params=_page_params(cursor))),
            types.ListResourcesResult,
        )

    async def list_all_resources(self) -> list[types.Resource]:
        """Walk every page of resources/list."""
        return await _collect_pages(self.list_resources, lambda result: result.resources)

    async def read_resource(self, uri: AnyUrl | str) -> types.ReadResourceResult:
        """Send a resources/read request."""
        self._require("resources/read")
        return await self.send_request(
            types.ClientRequest(
                types.ReadResourceRequest(
                    params=types.ReadResourceRequestParams(uri=AnyUrl(str(uri))),
                )
            ),
            types.ReadResourceResult,
        )

    async def subscribe_resource(
        self, uri: AnyUrl | str, callback: ResourceUpdatedFnT | None = None
    ) -> types.EmptyResult:
        """Send a resources/subscribe request.

        ``callback`` is invoked with the URI on every
        ``notifications/resources/updated`` for it, until unsubscribed.
        """
        self._require("resources/subscribe")
        url = AnyUrl(str(uri))
        result = await self.send_request(
            types.ClientRequest(
                types.SubscribeRequest(
                    params=types.SubscribeRequestParams(uri=url),
                )
            ),
            types.EmptyResult,
        )
        if callback is not None:
            callbacks = self._resource_callbacks.setdefault(str(url), [])
            if callback not in callbacks:
                callbacks.append(callback)
        return result

    async def unsubscribe_resource(self, uri: AnyUrl | str) -> types.EmptyResult:
        """Send a resources/unsubscribe request."""
        self._require("resources/unsubscribe")
        url = AnyUrl(str(uri))
        self._resource_callbacks.pop(str(url), None)
        return await self.send_request(
            types.ClientRequest(
                types.UnsubscribeRequest(
                    params=types.UnsubscribeRequestParams(uri=url),
                )
            ),
            types.EmptyResult,
        )

    async def list_tools(self, cursor: str | None = None) -> types.ListToolsResult:
        """Send a tools/list request."""
        self._require("tools/list")
        return await self.send_request(
            types.ClientRequest(types.ListToolsRequest(params=_page_params(cursor))),
            types.ListToolsResult,
        )

    async def list_all_tools(self) -> list[types.Tool]:
        """Walk every page of tools/list."""
        return await _collect_pages(self.list_tools, lambda result: result.tools)

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        read_timeout_seconds: timedelta | None = None,
    ) -> types.CallToolResult:
        """Send a tools/call request.

        A tool that failed comes back as a result with ``isError`` set, not as an
        exception; bad arguments and unknown tools raise ``McpError``.
        """
        self._require("tools/call")
        return await self.send_request(
            types.ClientRequest(
                types.CallToolRequest(
                    params=types.CallToolRequestParams(name=name, arguments=arguments),
                )
            ),
            types.CallToolResult,
            request_read_timeout_seconds=read_timeout_seconds,
        )

    async def list_prompts(self, cursor: str | None = None) -> types.ListPromptsResult:
        """Send a prompts/list request."""
        self._require("prompts/list")
        return await self.send_request(
            types.ClientRequest(types.ListPromptsRequest(params=_page_params(cursor))),
            types.ListPromptsResult,
        )

    async def list_all_prompts(self) -> list[types.Prompt]:
        """Walk every page of prompts/list."""
        return await _collect_pages(self.list_prompts, lambda result: result.prompts)

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
        """Send a prompts/get request."""
        self._require("prompts/get")
        return await self.send_request(
            types.ClientRequest(
                types.GetPromptRequest(
                    params=types.GetPromptRequestParams(name=name, arguments=arguments),
                )
            ),
            types.GetPromptResult,
        )

    async def complete(
        self,
        ref: types.ResourceReference | types.PromptReference,
        argument: dict[str, str],
    ) -> types.CompleteResult:
        """Send a completion/complete request."""
        self._require("completion/complete")
        return await self.send_request(
            types.ClientRequest(
                types.CompleteRequest(
                    params=types.CompleteRequestParams(
                        ref=ref,
                        argument=types.CompletionArgument(**argument),
                    ),
                )
            ),
            types.CompleteResult,
        )

    async def _received_request(self, responder: RequestResponder[types.ServerRequest, types.ClientResult]) -> None:
        match responder.request.root:
            case types.PingRequest():
                with responder:
                    return await responder.respond(types.ClientResult(root=types.EmptyResult()))
            case _:
                # Other request types are not expected to be received by the client
                pass

    async def _handle_incoming(
        self,
        req: RequestResponder[types.ServerRequest, types.ClientResult] | types.ServerNotification | Exception,
    ) -> None:
        """Handle incoming messages by forwarding to the message handler."""
        await self._message_handler(req)

    async def _received_notification(self, notification: types.ServerNotification) -> None:
        """Handle notifications from the server."""
        try:
            match notification.root:
                case types.LoggingMessageNotification(params=params):
                    await self._logging_callback(params)
                case types.ResourceUpdatedNotification(params=params):
                    await self._resource_updated(params.uri)
                case (
                    types.ResourceListChangedNotification()
                    | types.ToolListChangedNotification()
                    | types.PromptListChangedNotification()
                ) as changed:
                    if self._list_changed_callback is not None:
                        await self._list_changed_callback(_LIST_CHANGED_KINDS[type(changed)])
                case _:
                    pass
        except Exception:
            logger.exception("Notification callback for %s failed", notification.root.method)

    async def _resource_updated(self, uri: AnyUrl) -> None:
        logger.debug("Resource updated: %s", uri)
        for callback in list(self._resource_callbacks.get(str(uri), [])):
            await callback(uri)
        if self._resource_updated_callback is not None:
            await self._resource_updated_callback(uri)


def _page_params(cursor: str | None) -> types.PaginatedRequestParams | None:
    return types.PaginatedRequestParams(cursor=cursor) if cursor is not None else None


async def _collect_pages(
    fetch: Callable[[str | None], Awaitable[Any]],
    items: Callable[[Any], list[ItemT]],
) -> list[ItemT]:
    collected: list[ItemT] = []
    seen: set[str] = set()
    cursor: str | None = None
    while True:
        result = await fetch(cursor)
        collected.extend(items(result))
        if result.nextCursor is None:
            return collected
        if result.nextCursor in seen:
            raise McpError(
                types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Server repeated cursor {result.nextCursor!r} while paging",
                    data={"cursor": result.nextCursor},
                )
            )
        seen.add(result.nextCursor)
        cursor = result.nextCursor
