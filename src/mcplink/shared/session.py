import logging
from collections.abc import Callable
from contextlib import AsyncExitStack
from datetime import timedelta
from types import TracebackType
from typing import Any, Generic, TypeVar

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import BaseModel, ValidationError
from typing_extensions import Self

from mcplink.shared.capabilities import NegotiatedCapabilities
from mcplink.shared.exceptions import (
    ConnectionClosedError,
    McpError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from mcplink.shared.message import MessageMetadata, ServerMessageMetadata, SessionMessage
from mcplink.shared.router import DEFAULT_TOMBSTONE_TTL, RequestRouter, RouteOutcome
from mcplink.types import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    ClientNotification,
    ClientRequest,
    ClientResult,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
    RequestParams,
    ServerNotification,
    ServerRequest,
    ServerResult,
    UnknownNotification,
    UnknownRequest,
)

SendRequestT = TypeVar("SendRequestT", ClientRequest, ServerRequest)
SendResultT = TypeVar("SendResultT", ClientResult, ServerResult)
SendNotificationT = TypeVar("SendNotificationT", ClientNotification, ServerNotification)
ReceiveRequestT = TypeVar("ReceiveRequestT", ClientRequest, ServerRequest)
ReceiveResultT = TypeVar("ReceiveResultT", bound=BaseModel)
ReceiveNotificationT = TypeVar("ReceiveNotificationT", ClientNotification, ServerNotification)

logger = logging.getLogger(__name__)


class RequestResponder(Generic[ReceiveRequestT, SendResultT]):
    """Handles responding to MCP requests and manages request lifecycle.

    This class MUST be used as a context manager to ensure proper cleanup and
    cancellation handling:

    Example:
        with request_responder as resp:
            await resp.respond(result)

    The context manager ensures:
    1. Proper cancellation scope setup and cleanup
    2. Request completion tracking
    3. Cleanup of in-flight requests
    """

    def __init__(
        self,
        request_id: RequestId,
        request_meta: RequestParams.Meta | None,
        request: ReceiveRequestT,
        session: """BaseSession[
            SendRequestT,
            SendNotificationT,
            SendResultT,
            ReceiveRequestT,
            ReceiveNotificationT
        ]""",
        on_complete: Callable[["RequestResponder[ReceiveRequestT, SendResultT]"], Any],
        message_metadata: MessageMetadata = None,
    ) -> None:
        self.request_id = request_id
        self.request_meta = request_meta
        self.request = request
        self.message_metadata = message_metadata
        self._session = session
        self._completed = False
        self._cancel_scope = anyio.CancelScope()
        self._on_complete = on_complete
        self._entered = False

    def __enter__(self) -> "RequestResponder[ReceiveRequestT, SendResultT]":
        """Enter the context manager, enabling request cancellation tracking."""
        self._entered = True
        self._cancel_scope = anyio.CancelScope()
        self._cancel_scope.__enter__()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        """Exit the context manager, performing cleanup and notifying completion."""
        try:
            if self._completed:
                self._on_complete(self)
        finally:
            self._entered = False
        return self._cancel_scope.__exit__(exc_type, exc_val, exc_tb)

    @property
    def method(self) -> str:
        return self.request.root.method

    async def respond(self, response: SendResultT | ErrorData) -> None:
        """Send a response for this request.

        Must be called within a context manager block.
        Raises:
            RuntimeError: If not used within a context manager
            AssertionError: If request was already responded to
        """
        if not self._entered:
            raise RuntimeError("RequestResponder must be used as a context manager")
        assert not self._completed, "Request already responded to"

        if not self.cancelled:
            self._completed = True

            await self._session._send_response(  # type: ignore[reportPrivateUsage]
                request_id=self.request_id, response=response
            )

    @property
    def in_flight(self) -> bool:
        return not self._completed and not self.cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancel_scope.cancel_called


class BaseSession(
    Generic[
        SendRequestT,
        SendNotificationT,
        SendResultT,
        ReceiveRequestT,
        ReceiveNotificationT,
    ],
):
    """
    Implements an MCP "session" on top of read/write streams, including
    request/response linking and notifications.

    Inbound messages are consumed by a single receive loop, in arrival order.
    Outbound messages from any number of concurrent callers are serialized by a
    write lock.

    This class is an async context manager that automatically starts processing
    messages when entered.
    """

    _in_flight: dict[RequestId, RequestResponder[ReceiveRequestT, SendResultT]]

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        receive_request_type: type[ReceiveRequestT],
        receive_notification_type: type[ReceiveNotificationT],
        # If none, reading will never time out
        read_timeout_seconds: timedelta | None = None,
        tombstone_ttl: float = DEFAULT_TOMBSTONE_TTL,
    ) -> None:
        self._read_stream = read_stream
        self._write_stream = write_stream
        self._receive_request_type = receive_request_type
        self._receive_notification_type = receive_notification_type
        self._session_read_timeout_seconds = read_timeout_seconds
        self._exit_stack = AsyncExitStack()
        self._in_flight = {}
        self._router = RequestRouter(tombstone_ttl)
        self._write_lock = anyio.Lock()
        self._negotiated: NegotiatedCapabilities | None = None
        self._fatal_error: ProtocolError | None = None
        self._transport_error: TransportError | None = None
        self._closed = anyio.Event()

    async def __aenter__(self) -> Self:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._receive_loop)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        await self._exit_stack.aclose()
        # Using BaseSession as a context manager should not block on exit (this
        # would be very surprising behavior), so make sure to cancel the tasks
        # in the task group.
        self._task_group.cancel_scope.cancel()
        return await self._task_group.__aexit__(exc_type, exc_val, exc_tb)

    @property
    def negotiated(self) -> NegotiatedCapabilities | None:
        """The frozen capability set, once the handshake completed."""
        return self._negotiated

    @property
    def fatal_error(self) -> ProtocolError | None:
        return self._fatal_error

    @property
    def transport_error(self) -> TransportError | None:
        return self._transport_error

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _fail(self, error: ProtocolError) -> None:
        """Close the session on a protocol error detected locally rather than read off the channel.

        Pending and future requests are rejected with ``error``, the write stream is
        closed and the receive loop stops.
        """
        logger.error("Protocol error, closing session: %s", error)
        self._fatal_error = error
        with anyio.CancelScope(shield=True):
            await self._router.close(error)
            await self._write_stream.aclose()
        self._closed.set()
        self._task_group.cancel_scope.cancel()

    async def send_request(
        self,
        request: SendRequestT,
        result_type: type[ReceiveResultT],
        request_read_timeout_seconds: timedelta | None = None,
        metadata: MessageMetadata = None,
    ) -> ReceiveResultT:
        """
        Sends a request and wait for a response. Raises an McpError if the
        response contains an error, and a RequestTimeoutError if none arrives
        in time. If a request read timeout is provided, it will take
        precedence over the session read timeout.

        Do not use this method to emit notifications! Use send_notification()
        instead.
        """
        method = request.root.method
        pending = await self._router.open(method)
        request_data = request.model_dump(by_alias=True, mode="json", exclude_none=True)
        jsonrpc_request = JSONRPCRequest(jsonrpc="2.0", id=pending.request_id, **request_data)

        # request read timeout takes precedence over session read timeout
        timeout = None
        if request_read_timeout_seconds is not None:
            timeout = request_read_timeout_seconds.total_seconds()
        elif self._session_read_timeout_seconds is not None:
            timeout = self._session_read_timeout_seconds.total_seconds()

        completed = False
        try:
            await self._send_message(SessionMessage(message=JSONRPCMessage(jsonrpc_request), metadata=metadata))
            try:
                reply = await pending.wait(timeout)
            except TimeoutError:
                raise RequestTimeoutError(method, timeout or 0) from None
            completed = True
        finally:
            if completed:
                pending.close()
            else:
                # Timed out, cancelled by the caller, or the channel died; a
                # reply that shows up later is dropped by the router.
                with anyio.CancelScope(shield=True):
                    await self._router.abandon(pending)

        if isinstance(reply, JSONRPCError):
            raise McpError(reply.error)
        return result_type.model_validate(reply.result)

    async def send_notification(
        self,
        notification: SendNotificationT,
        related_request_id: RequestId | None = None,
    ) -> None:
        """
        Emits a notification, which is a one-way message that does not expect
        a response.
        """
        jsonrpc_notification = JSONRPCNotification(
            jsonrpc="2.0",
            **notification.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
        session_message = SessionMessage(
            message=JSONRPCMessage(jsonrpc_notification),
            metadata=ServerMessageMetadata(related_request_id=related_request_id) if related_request_id else None,
        )
        await self._send_message(session_message)

    async def _send_response(self, request_id: RequestId, response: SendResultT | ErrorData) -> None:
        if isinstance(response, ErrorData):
            jsonrpc_error = JSONRPCError(jsonrpc="2.0", id=request_id, error=response)
            session_message = SessionMessage(message=JSONRPCMessage(jsonrpc_error))
        else:
            jsonrpc_response = JSONRPCResponse(
                jsonrpc="2.0",
                id=request_id,
                result=response.model_dump(by_alias=True, mode="json", exclude_none=True),
            )
            session_message = SessionMessage(message=JSONRPCMessage(jsonrpc_response))
        await self._send_message(session_message)

    async def _send_error(self, request_id: RequestId, code: int, message: str, data: Any | None = None) -> None:
        await self._send_response(request_id, ErrorData(code=code, message=message, data=data))

    async def _send_message(self, message: SessionMessage) -> None:
        async with self._write_lock:
            try:
                await self._write_stream.send(message)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
                raise ConnectionClosedError() from exc

    async def _receive_loop(self) -> None:
        async with (
            self._read_stream,
            self._write_stream,
        ):
            try:
                async for message in self._read_stream:
                    if isinstance(message, ProtocolError):
                        logger.error("Protocol error, closing session: %s", message)
                        self._fatal_error = message
                        await self._handle_incoming(message)
                        break
                    elif isinstance(message, TransportError):
                        logger.warning("Transport dropped: %s", message)
                        self._transport_error = message
                        await self._handle_incoming(message)
                        break
                    elif isinstance(message, Exception):
                        await self._handle_incoming(message)
                        continue

                    root = message.message.root
                    if isinstance(root, JSONRPCRequest):
                        await self._receive_request(message, root)
                    elif isinstance(root, JSONRPCNotification):
                        await self._receive_notification(root)
                    else:  # Response or error
                        await self._receive_reply(root)

            except anyio.ClosedResourceError:
                # This is expected when the peer disconnects abruptly.
                logger.debug("Read stream closed by peer")
            except Exception as e:
                # Other exceptions are not expected and should be logged. We purposefully
                # catch all exceptions here to avoid crashing the session's task group.
                logger.exception(f"Unhandled exception in receive loop: {e}")
            finally:
                # after the read stream is closed, we need to send errors
                # to any pending requests
                with anyio.CancelScope(shield=True):
                    await self._router.close(self._fatal_error)
                self._closed.set()

    async def _receive_request(self, message: SessionMessage, root: JSONRPCRequest) -> None:
        if root.id in self._in_flight:
            logger.warning("Rejecting duplicate request id %r", root.id)
            await self._send_error(root.id, INVALID_REQUEST, f"Duplicate request id: {root.id}")
            return

        try:
            validated_request = self._receive_request_type.model_validate(
                root.model_dump(by_alias=True, mode="json", exclude_none=True)
            )
        except ValidationError as e:
            logger.warning("Failed to validate %s request: %s", root.method, e)
            await self._send_error(
                root.id,
                INVALID_PARAMS,
                "Invalid request parameters",
                e.errors(include_url=False, include_context=False, include_input=False),
            )
            return

        if isinstance(validated_request.root, UnknownRequest):
            logger.info("Method not found: %s", root.method)
            await self._send_error(root.id, METHOD_NOT_FOUND, f"Method not found: {root.method}")
            return

        params = validated_request.root.params
        responder = RequestResponder(
            request_id=root.id,
            request_meta=params.meta if isinstance(params, RequestParams) else None,
            request=validated_request,
            session=self,
            on_complete=lambda r: self._in_flight.pop(r.request_id, None),
            message_metadata=message.metadata,
        )
        self._in_flight[responder.request_id] = responder
        await self._received_request(responder)

        if not responder._completed:  # type: ignore[reportPrivateUsage]
            await self._handle_incoming(responder)

    async def _receive_notification(self, root: JSONRPCNotification) -> None:
        try:
            notification = self._receive_notification_type.model_validate(
                root.model_dump(by_alias=True, mode="json", exclude_none=True)
            )
        except ValidationError as e:
            logger.warning(f"Failed to validate notification: {e}. Message was: {root}")
            return

        if isinstance(notification.root, UnknownNotification):
            logger.debug("Ignoring unknown notification %s", root.method)
            return

        await self._received_notification(notification)
        await self._handle_incoming(notification)

    async def _receive_reply(self, root: JSONRPCResponse | JSONRPCError) -> None:
        outcome = await self._router.resolve(root)
        if outcome is RouteOutcome.LATE:
            logger.debug("Dropping late response for abandoned request %s", root.id)
        elif outcome is RouteOutcome.UNKNOWN:
            logger.warning("Dropping response with unknown request id %r", root.id)
            await self._handle_incoming(RuntimeError(f"Received response with an unknown request ID: {root.id}"))

    async def _received_request(self, responder: RequestResponder[ReceiveRequestT, SendResultT]) -> None:
        """
        Can be overridden by subclasses to handle a request without needing to
        listen on the message stream.

        If the request is responded to within this method, it will not be
        forwarded on to the message stream.
        """

    async def _received_notification(self, notification: ReceiveNotificationT) -> None:
        """
        Can be overridden by subclasses to handle a notification without needing
        to listen on the message stream.
        """

    async def _handle_incoming(
        self,
        req: RequestResponder[ReceiveRequestT, SendResultT] | ReceiveNotificationT | Exception,
    ) -> None:
        """A generic handler for incoming messages. Overwritten by subclasses."""
        pass
