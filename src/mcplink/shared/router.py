"""Correlation of outbound requests with their responses.

The router owns the only mutable state that concurrent callers share inside a
session: the map from request id to the handle a caller is waiting on. All
access goes through one ``anyio.Lock``.

Ids are allocated monotonically and never reused. When a caller stops waiting
(timeout or cancellation) its id becomes a tombstone for a while, so that a
response arriving late is recognised and dropped instead of being reported as
a protocol violation or, worse, completing some other request.
"""

import logging
from enum import Enum

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcplink.shared.exceptions import ConnectionClosedError, McpError
from mcplink.types import JSONRPCError, JSONRPCResponse, RequestId

logger = logging.getLogger(__name__)

DEFAULT_TOMBSTONE_TTL = 60.0

Reply = JSONRPCResponse | JSONRPCError


class RouteOutcome(Enum):
    DELIVERED = "delivered"
    """The reply completed a pending request."""
    LATE = "late"
    """The request was abandoned; the reply is dropped."""
    UNKNOWN = "unknown"
    """Nobody ever sent a request with this id."""


class PendingRequest:
    """Handle for one outstanding request."""

    def __init__(self, request_id: RequestId, method: str) -> None:
        self.request_id = request_id
        self.method = method
        self._send_stream: MemoryObjectSendStream[Reply | McpError]
        self._receive_stream: MemoryObjectReceiveStream[Reply | McpError]
        self._send_stream, self._receive_stream = anyio.create_memory_object_stream[Reply | McpError](1)

    def _deliver(self, item: Reply | McpError) -> None:
        try:
            self._send_stream.send_nowait(item)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError, anyio.WouldBlock):
            # The caller already stopped waiting
            logger.debug("Dropping reply for abandoned request %s", self.request_id)
        finally:
            self._send_stream.close()

    async def wait(self, timeout: float | None = None) -> Reply:
        """Wait for the reply.

        Raises:
            TimeoutError: if ``timeout`` elapses first.
            McpError: if the request was rejected, e.g. because the channel closed.
        """
        with anyio.fail_after(timeout):
            item = await self._receive_stream.receive()
        if isinstance(item, McpError):
            raise item
        return item

    def close(self) -> None:
        self._send_stream.close()
        self._receive_stream.close()


class RequestRouter:
    def __init__(self, tombstone_ttl: float = DEFAULT_TOMBSTONE_TTL) -> None:
        self._lock = anyio.Lock()
        self._next_id = 0
        self._pending: dict[RequestId, PendingRequest] = {}
        self._tombstones: dict[RequestId, float] = {}
        self._tombstone_ttl = tombstone_ttl
        self._closed: McpError | None = None

    @property
    def outstanding(self) -> list[RequestId]:
        return list(self._pending)

    def _expire_tombstones(self) -> None:
        now = anyio.current_time()
        for request_id in [rid for rid, expires in self._tombstones.items() if expires <= now]:
            del self._tombstones[request_id]

    async def open(self, method: str) -> PendingRequest:
        """Allocate an id and register a pending handle for it."""
        async with self._lock:
            if self._closed is not None:
                raise self._closed
            self._expire_tombstones()
            request_id = self._next_id
            self._next_id += 1
            pending = PendingRequest(request_id, method)
            self._pending[request_id] = pending
            return pending

    async def resolve(self, reply: Reply) -> RouteOutcome:
        async with self._lock:
            self._expire_tombstones()
            pending = self._pending.pop(reply.id, None) if reply.id is not None else None
            if pending is None:
                if reply.id is not None and reply.id in self._tombstones:
                    return RouteOutcome.LATE
                return RouteOutcome.UNKNOWN
        pending._deliver(reply)  # type: ignore[reportPrivateUsage]
        return RouteOutcome.DELIVERED

    async def abandon(self, pending: PendingRequest) -> None:
        """Stop waiting for ``pending``; a later reply for it will be dropped."""
        async with self._lock:
            if self._pending.pop(pending.request_id, None) is not None:
                self._tombstones[pending.request_id] = anyio.current_time() + self._tombstone_ttl
        pending.close()

    async def close(self, error: McpError | None = None) -> None:
        """Reject every pending request and refuse new ones."""
        async with self._lock:
            if self._closed is None:
                self._closed = error or ConnectionClosedError()
            rejected = list(self._pending.values())
            self._pending.clear()
        for pending in rejected:
            pending._deliver(self._closed)  # type: ignore[reportPrivateUsage]
