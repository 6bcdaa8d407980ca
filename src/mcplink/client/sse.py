import logging
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urljoin, urlparse

import anyio
import httpx
from anyio.abc import TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from httpx_sse import SSEError, aconnect_sse

import mcplink.types as types
from mcplink.shared import codec
from mcplink.shared._httpx_utils import McpHttpClientFactory, create_mcp_http_client
from mcplink.shared.exceptions import ParseError, TransportError
from mcplink.shared.message import ClientMessageMetadata, SessionMessage
from mcplink.utilities.logging import redact_sensitive_data

logger = logging.getLogger(__name__)


def remove_request_params(url: str) -> str:
    return urljoin(url, urlparse(url).path)


@asynccontextmanager
async def sse_client(
    url: str,
    headers: dict[str, Any] | None = None,
    timeout: float = 5,
    sse_read_timeout: float = 60 * 5,
    httpx_client_factory: McpHttpClientFactory = create_mcp_http_client,
):
    """
    Client transport for SSE.

    `sse_read_timeout` determines how long (in seconds) the client will wait for a new
    event before disconnecting. All other HTTP operations are controlled by `timeout`.

    A message that cannot be decoded reaches the read stream as a ``ParseError``;
    losing the connection reaches it as a ``TransportError``. Both end the session
    reading from it.

    Args:
        url: SSE endpoint URL
        headers: Optional HTTP headers, sent with the GET and every POST
        timeout: HTTP request timeout in seconds
        sse_read_timeout: SSE read timeout in seconds
    """
    read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception]

    write_stream: MemoryObjectSendStream[SessionMessage]
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage]

    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    async with anyio.create_task_group() as tg:
        try:
            logger.info("Connecting to SSE endpoint: %s", remove_request_params(url))
            logger.debug("SSE request headers: %s", redact_sensitive_data(headers))
            async with httpx_client_factory(headers=headers, timeout=httpx.Timeout(timeout)) as client:
                async with aconnect_sse(
                    client,
                    "GET",
                    url,
                    timeout=httpx.Timeout(timeout, read=sse_read_timeout),
                ) as event_source:
                    event_source.response.raise_for_status()
                    logger.debug("SSE connection established")

                    async def sse_reader(
                        task_status: TaskStatus[str] = anyio.TASK_STATUS_IGNORED,
                    ):
                        started = False
                        try:
                            async for sse in event_source.aiter_sse():
                                logger.debug("Received SSE event: %s", sse.event)
                                match sse.event:
                                    case "endpoint":
                                        endpoint_url = urljoin(url, sse.data)
                                        logger.info("Received endpoint URL: %s", endpoint_url)

                                        url_parsed = urlparse(url)
                                        endpoint_parsed = urlparse(endpoint_url)
                                        if (
                                            url_parsed.netloc != endpoint_parsed.netloc
                                            or url_parsed.scheme != endpoint_parsed.scheme
                                        ):
                                            error_msg = (
                                                f"Endpoint origin does not match connection origin: {endpoint_url}"
                                            )
                                            logger.error(error_msg)
                                            raise ValueError(error_msg)

                                        started = True
                                        task_status.started(endpoint_url)

                                    case "message":
                                        try:
                                            message = codec.decode(sse.data)
                                        except ParseError as exc:
                                            logger.error("Error parsing server message: %s", exc)
                                            await read_stream_writer.send(exc)
                                            continue

                                        logger.debug("Received server message: %s", message)
                                        await read_stream_writer.send(
                                            SessionMessage(message, metadata=ClientMessageMetadata(event_id=sse.id))
                                        )
                                    case _:
                                        logger.warning("Unknown SSE event: %s", sse.event)
                        except (httpx.HTTPError, SSEError) as exc:
                            logger.warning("SSE stream failed: %s", exc)
                            if not started:
                                raise TransportError(f"SSE stream failed before the endpoint event: {exc}") from exc
                            await _send_quietly(read_stream_writer, TransportError(f"SSE stream failed: {exc}"))
                        else:
                            if not started:
                                raise TransportError("SSE stream ended before the endpoint event")
                            logger.info("SSE stream closed by the server")
                            await _send_quietly(read_stream_writer, TransportError("SSE stream closed by the server"))
                        finally:
                            await read_stream_writer.aclose()

                    async def post_writer(endpoint_url: str):
                        try:
                            async with write_stream_reader:
                                async for session_message in write_stream_reader:
                                    logger.debug("Sending client message: %s", session_message)
                                    response = await client.post(
                                        endpoint_url,
                                        content=codec.encode(session_message.message),
                                        headers={"content-type": "application/json"},
                                    )
                                    if response.status_code == 404:
                                        raise TransportError("Session no longer known to the server")
                                    if response.is_error:
                                        await _reject_request(read_stream_writer, session_message, response)
                                        continue
                                    logger.debug("Client message sent successfully: %s", response.status_code)
                        except (httpx.HTTPError, TransportError) as exc:
                            logger.error("Error in post_writer: %s", exc)
                            error = exc if isinstance(exc, TransportError) else TransportError(f"POST failed: {exc}")
                            await _send_quietly(read_stream_writer, error)
                        finally:
                            await write_stream.aclose()

                    endpoint_url = await tg.start(sse_reader)
                    logger.info("Starting post writer with endpoint URL: %s", endpoint_url)
                    tg.start_soon(post_writer, endpoint_url)

                    try:
                        yield read_stream, write_stream
                    finally:
                        tg.cancel_scope.cancel()
        finally:
            await read_stream_writer.aclose()
            await write_stream.aclose()


async def _send_quietly(writer: MemoryObjectSendStream[SessionMessage | Exception], item: Exception) -> None:
    try:
        await writer.send(item)
    except (anyio.ClosedResourceError, anyio.BrokenResourceError):
        logger.debug("Read stream already closed, dropping %r", item)


async def _reject_request(
    writer: MemoryObjectSendStream[SessionMessage | Exception],
    session_message: SessionMessage,
    response: httpx.Response,
) -> None:
    """Turn an HTTP refusal of a request into a JSON-RPC error for the waiting caller."""
    root = session_message.message.root
    logger.warning("Server refused message with HTTP %s: %s", response.status_code, response.text)
    if not isinstance(root, types.JSONRPCRequest):
        return
    error = types.ErrorData(
        code=types.INVALID_REQUEST,
        message=f"HTTP {response.status_code}: {response.text}",
        data={"status": response.status_code},
    )
    await writer.send(SessionMessage(codec.error_message(root.id, error)))
