"""
ServerSession Module

This module provides the ServerSession class, which manages communication between the
server and one connected client. It owns the lifecycle of the connection:

    Connecting --initialize--> Initializing --notifications/initialized--> Ready --> Closed

Before the session is Ready only ``initialize``, ``notifications/initialized`` and
``ping`` are accepted. Once the handshake completed, the negotiated capability set is
frozen and every inbound request and outbound notification is checked against it.

Common usage pattern:
```
    server = Server(name)

    @server.call_tool()
    async def handle_call(name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        ctx = server.request_context
        await ctx.session.send_log_message("info", f"calling {name}")
        ...
```

The ServerSession class is typically used internally by the Server class and should not
be instantiated directly by users of mcplink.
"""

import logging
import uuid
from enum import Enum
from typing import Any, TypeVar

import anyio
import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import AnyUrl

import mcplink.types as types
from mcplink.server.models import InitializationOptions
from mcplink.shared.capabilities import NegotiatedCapabilities, NegotiatedSession
from mcplink.shared.message import SessionMessage
from mcplink.shared.session import BaseSession, RequestResponder
from mcplink.shared.version import SUPPORTED_PROTOCOL_VERSIONS

logger = logging.getLogger(__name__)


class SessionState(Enum):
    Connecting = 1
    Initializing = 2
    Ready = 3
    Closed = 4


LOGGING_LEVELS: list[types.LoggingLevel] = [
    "debug",
    "info",
    "notice",
    "warning",
    "error",
    "critical",
    "alert",
    "emergency",
]

ServerSessionT = TypeVar("ServerSessionT", bound="ServerSession")

ServerRequestResponder = (
    RequestResponder[types.ClientRequest, types.ServerResult] | types.ClientNotification | Exception
)


class ServerSession(
    BaseSession[
        types.ServerRequest,
        types.ServerNotification,
        types.ServerResult,
        types.ClientRequest,
        types.ClientNotification,
    ]
):
    _client_params: types.InitializeRequestParams | None = None

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        init_options: InitializationOptions,
        session_id: str | None = None,
    ) -> None:
        super().__init__(read_stream, write_stream, types.ClientRequest, types.ClientNotification)
        self._state = SessionState.Connecting
        self._protocol_version = types.LATEST_PROTOCOL_VERSION
        self._init_options = init_options
        self.session_id = session_id or uuid.uuid4().hex
        self.logging_level: types.LoggingLevel | None = None
        self._incoming_message_stream_writer, self._incoming_message_stream_reader = anyio.create_memory_object_stream[
            ServerRequestResponder
        ](0)
        self._exit_stack.push_async_callback(lambda: self._incoming_message_stream_reader.aclose())

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def client_params(self) -> types.InitializeRequestParams | None:
        return self._client_params

    @property
    def negotiated_session(self) -> NegotiatedSession | None:
        if self._client_params is None or self._negotiated is None:
            return None
        return NegotiatedSession(
            protocol_version=self._protocol_version,
            capabilities=self._negotiated,
            peer_info=self._client_params.clientInfo,
            session_id=self.session_id,
        )

    def supports(self, method: str) -> bool:
        """Whether ``method`` is usable on this session right now."""
        return self._state is SessionState.Ready and self._negotiated is not None and self._negotiated.supports(method)

    async def _receive_loop(self) -> None:
        try:
            async with self._incoming_message_stream_writer:
                await super()._receive_loop()
        finally:
            self._state = SessionState.Closed
            logger.info("Session %s closed", self.session_id)

    async def _received_request(self, responder: RequestResponder[types.ClientRequest, types.ServerResult]):
        match responder.request.root:
            case types.InitializeRequest(params=params):
                with responder:
                    if self._state is not SessionState.Connecting:
                        logger.warning("Rejecting repeated initialize on session %s", self.session_id)
                        await responder.respond(
                            types.ErrorData(code=types.INVALID_REQUEST, message="Session already initialized")
                        )
                        return
                    await responder.respond(self._initialize(params))
            case types.PingRequest():
                # Ping requests are allowed at any time
                with responder:
                    await responder.respond(types.ServerResult(types.EmptyResult()))
            case request:
                if self._state is not SessionState.Ready:
                    with responder:
                        await responder.respond(
                            types.ErrorData(code=types.INVALID_REQUEST, message="Session not initialized")
                        )
                elif not self.supports(request.method):
                    logger.info("Rejecting %s: outside the negotiated capabilities", request.method)
                    with responder:
                        await responder.respond(
                            types.ErrorData(
                                code=types.CAPABILITY_NOT_SUPPORTED,
                                message=f"Method {request.method!r} is not available in the negotiated capabilities",
                                data={"method": request.method},
                            )
                        )

    def _initialize(self, params: types.InitializeRequestParams) -> types.ServerResult:
        requested_version = params.protocolVersion
        self._protocol_version = (
            requested_version
            if requested_version in SUPPORTED_PROTOCOL_VERSIONS
            else types.LATEST_PROTOCOL_VERSION
        )
        self._client_params = params
        self._negotiated = NegotiatedCapabilities.negotiate(self._init_options.capabilities, params.capabilities)
        self._state = SessionState.Initializing
        logger.info(
            "Session %s initializing with %s %s (protocol %s)",
            self.session_id,
            params.clientInfo.name,
            params.clientInfo.version,
            self._protocol_version,
        )
        return types.ServerResult(
            types.InitializeResult(
                protocolVersion=self._protocol_version,
                capabilities=self._init_options.capabilities,
                serverInfo=types.Implementation(
                    name=self._init_options.server_name,
                    version=self._init_options.server_version,
                ),
                instructions=self._init_options.instructions,
            )
        )

    async def _received_notification(self, notification: types.ClientNotification) -> None:
        # Need this to avoid ASYNC910
        await anyio.lowlevel.checkpoint()
        match notification.root:
            case types.InitializedNotification():
                if self._state is SessionState.Initializing:
                    self._state = SessionState.Ready
                    logger.info("Session %s ready", self.session_id)
                else:
                    logger.warning("Ignoring notifications/initialized in state %s", self._state.name)
            case _:
                if self._state is not SessionState.Ready:
                    logger.warning("Dropping %s received before initialization", notification.root.method)

    async def send_notification(
        self,
        notification: types.ServerNotification,
        related_request_id: types.RequestId | None = None,
    ) -> None:
        """Send a notification if the negotiated capabilities allow it.

        Notifications outside the negotiated set are dropped, never sent.
        """
        method = notification.root.method
        if not self.supports(method):
            logger.debug("Not sending %s on session %s: not negotiated", method, self.session_id)
            return
        await super().send_notification(notification, related_request_id)

    async def send_log_message(
        self,
        level: types.LoggingLevel,
        data: Any,
        logger: str | None = None,
        related_request_id: types.RequestId | None = None,
    ) -> None:
        """Send a log message notification, honouring the level set by the client."""
        if self.logging_level is not None and LOGGING_LEVELS.index(level) < LOGGING_LEVELS.index(self.logging_level):
            return
        await self.send_notification(
            types.ServerNotification(
                types.LoggingMessageNotification(
                    params=types.LoggingMessageNotificationParams(
                        level=level,
                        data=data,
                        logger=logger,
                    ),
                )
            ),
            related_request_id,
        )

    async def send_resource_updated(self, uri: AnyUrl | str) -> None:
        """Send a resource updated notification."""
        await self.send_notification(
            types.ServerNotification(
                types.ResourceUpdatedNotification(
                    params=types.ResourceUpdatedNotificationParams(uri=AnyUrl(str(uri))),
                )
            )
        )

    async def send_ping(self) -> types.EmptyResult:
        """Send a ping request."""
        return await self.send_request(
            types.ServerRequest(types.PingRequest()),
            types.EmptyResult,
        )

    async def send_resource_list_changed(self) -> None:
        """Send a resource list changed notification."""
        await self.send_notification(types.ServerNotification(types.ResourceListChangedNotification()))

    async def send_tool_list_changed(self) -> None:
        """Send a tool list changed notification."""
        await self.send_notification(types.ServerNotification(types.ToolListChangedNotification()))

    async def send_prompt_list_changed(self) -> None:
        """Send a prompt list changed notification."""
        await self.send_notification(types.ServerNotification(types.PromptListChangedNotification()))

    async def _handle_incoming(self, req: ServerRequestResponder) -> None:
        await self._incoming_message_stream_writer.send(req)

    @property
    def incoming_messages(
        self,
    ) -> MemoryObjectReceiveStream[ServerRequestResponder]:
        return self._incoming_message_stream_reader
