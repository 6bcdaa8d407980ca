"""
SSE Server Transport Module

This module implements a Server-Sent Events (SSE) transport layer for mcplink servers.

Example usage:
```
    # Create an SSE transport at an endpoint
    sse = SseServerTransport("/messages/")

    # Create Starlette routes for SSE and message handling
    routes = [
        Route("/sse", endpoint=handle_sse, methods=["GET"]),
        Mount("/messages/", app=sse.handle_post_message),
    ]

    # Define handler functions
    async def handle_sse(request):
        async with sse.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await app.run(
                streams.read_stream, streams.write_stream, app.create_initialization_options(),
                session_id=streams.session_id,
            )
        # Return empty response to avoid NoneType error
        return Response()

    # Create and run Starlette app
    starlette_app = Starlette(routes=routes)
    uvicorn.run(starlette_app, host="127.0.0.1", port=port)
```

The first event on the stream is ``endpoint``, carrying the URL the client POSTs
its messages to. Every later event is a ``message`` holding one JSON-RPC envelope.
Events carry a monotonic ``id``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, NamedTuple
from urllib.parse import quote
from uuid import UUID, uuid4

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from mcplink.server.http_body import DEFAULT_MAX_BODY_BYTES, BodyTooLargeError, read_request_body
from mcplink.shared import codec
from mcplink.shared.exceptions import ParseError
from mcplink.shared.message import ServerMessageMetadata, SessionMessage

logger = logging.getLogger(__name__)


class SseStreams(NamedTuple):
    read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
    write_stream: MemoryObjectSendStream[SessionMessage]
    session_id: str


class SseServerTransport:
    """
    SSE server transport for mcplink. This class provides two ASGI applications,
    suitable to be used with a framework like Starlette and a server like uvicorn:

        1. connect_sse() is an ASGI application which receives incoming GET requests,
           and sets up a new SSE stream to send server messages to the client.
        2. handle_post_message() is an ASGI application which receives incoming POST
           requests, which should contain client messages that link to a
           previously-established SSE session.
    """

    _endpoint: str
    _read_stream_writers: dict[UUID, MemoryObjectSendStream[SessionMessage | Exception]]

    def __init__(
        self,
        endpoint: str,
        max_body_bytes: int | None = DEFAULT_MAX_BODY_BYTES,
        ping_interval: float | None = None,
    ) -> None:
        """
        Creates a new SSE server transport, which will direct the client to POST
        messages to the relative path given.

        Args:
            endpoint: A relative path where messages should be posted
                    (e.g., "/messages/").
            max_body_bytes: Largest POST body accepted; larger ones get 413.
            ping_interval: Seconds between keep-alive comments, or None for the
                    sse-starlette default.
        """

        super().__init__()
        self._endpoint = endpoint
        self._max_body_bytes = max_body_bytes
        self._ping_interval = ping_interval
        self._read_stream_writers = {}
        logger.debug(f"SseServerTransport initialized with endpoint: {endpoint}")

    @property
    def session_ids(self) -> list[str]:
        return [session_id.hex for session_id in self._read_stream_writers]

    @asynccontextmanager
    async def connect_sse(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            logger.error("connect_sse received non-HTTP request")
            raise ValueError("connect_sse can only handle HTTP requests")

        logger.debug("Setting up SSE connection")
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
        read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception]

        write_stream: MemoryObjectSendStream[SessionMessage]
        write_stream_reader: MemoryObjectReceiveStream[SessionMessage]

        read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

        session_id = uuid4()
        self._read_stream_writers[session_id] = read_stream_writer
        logger.debug(f"Created new session with ID: {session_id}")

        # Determine the full path for the message endpoint to be sent to the client.
        # scope['root_path'] is the prefix where the current Starlette app
        # instance is mounted.
        root_path = scope.get("root_path", "")
        full_message_path_for_client = root_path.rstrip("/") + self._endpoint
        client_post_uri_data = f"{quote(full_message_path_for_client)}?session_id={session_id.hex}"

        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream[dict[str, Any]](0)

        async def sse_writer():
            logger.debug("Starting SSE writer")
            event_id = 0
            async with sse_stream_writer, write_stream_reader:
                await sse_stream_writer.send({"event": "endpoint", "data": client_post_uri_data, "id": str(event_id)})
                logger.debug(f"Sent endpoint event: {client_post_uri_data}")

                async for session_message in write_stream_reader:
                    event_id += 1
                    logger.debug(f"Sending message via SSE: {session_message}")
                    await sse_stream_writer.send(
                        {
                            "event": "message",
                            "data": codec.encode(session_message.message).decode(),
                            "id": str(event_id),
                        }
                    )

        async with anyio.create_task_group() as tg:

            async def response_wrapper(scope: Scope, receive: Receive, send: Send):
                """
                The EventSourceResponse returning signals a client close / disconnect.
                In this case we close our side of the streams to signal the client that
                the connection has been closed.
                """
                try:
                    await EventSourceResponse(
                        content=sse_stream_reader,
                        data_sender_callable=sse_writer,
                        ping=self._ping_interval,
                    )(scope, receive, send)
                finally:
                    self._read_stream_writers.pop(session_id, None)
                    await read_stream_writer.aclose()
                    await write_stream_reader.aclose()
                    logger.debug(f"Client session disconnected {session_id}")

            logger.debug("Starting SSE response task")
            tg.start_soon(response_wrapper, scope, receive, send)

            logger.debug("Yielding read and write streams")
            yield SseStreams(read_stream, write_stream, session_id.hex)

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.debug("Handling POST message")
        request = Request(scope, receive)

        session_id_param = request.query_params.get("session_id")
        if session_id_param is None:
            logger.warning("Received request without session_id")
            response = Response("session_id is required", status_code=400)
            return await response(scope, receive, send)

        try:
            session_id = UUID(hex=session_id_param)
            logger.debug(f"Parsed session ID: {session_id}")
        except ValueError:
            logger.warning(f"Received invalid session ID: {session_id_param}")
            response = Response("Invalid session ID", status_code=400)
            return await response(scope, receive, send)

        writer = self._read_stream_writers.get(session_id)
        if not writer:
            logger.warning(f"Could not find session for ID: {session_id}")
            response = Response("Could not find session", status_code=404)
            return await response(scope, receive, send)

        try:
            body = await read_request_body(request, max_body_bytes=self._max_body_bytes)
        except BodyTooLargeError as err:
            logger.warning("Rejecting POST for session %s: %s", session_id, err)
            response = Response(str(err), status_code=413)
            return await response(scope, receive, send)

        logger.debug(f"Received JSON: {body}")

        try:
            message = codec.decode(body)
            logger.debug(f"Validated client message: {message}")
        except ParseError as err:
            logger.exception("Failed to parse message")
            response = JSONResponse(codec.dump_message(codec.error_message(None, err.error)), status_code=400)
            await response(scope, receive, send)
            # A malformed envelope is fatal to the session
            await self._forward(writer, session_id, err)
            return

        # Pass the ASGI scope for framework-agnostic access to request data
        metadata = ServerMessageMetadata(request_context=request)
        session_message = SessionMessage(message, metadata=metadata)
        logger.debug(f"Sending session message to writer: {session_message}")
        response = Response("Accepted", status_code=202)
        await response(scope, receive, send)
        await self._forward(writer, session_id, session_message)

    async def _forward(
        self,
        writer: MemoryObjectSendStream[SessionMessage | Exception],
        session_id: UUID,
        item: SessionMessage | Exception,
    ) -> None:
        try:
            await writer.send(item)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.info("Session %s closed before the message could be delivered", session_id.hex)
