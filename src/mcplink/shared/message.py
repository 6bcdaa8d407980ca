"""Message wrapper with metadata support.

This module defines a wrapper type that combines JSONRPCMessage with metadata
that only the transport cares about, such as the SSE event id a message
arrived with or the request a notification relates to.
"""

from dataclasses import dataclass
from typing import Any

from mcplink.types import JSONRPCMessage, RequestId


@dataclass
class ClientMessageMetadata:
    """Metadata specific to client messages."""

    event_id: str | None = None
    """SSE ``id:`` of the event the message was decoded from."""


@dataclass
class ServerMessageMetadata:
    """Metadata specific to server messages."""

    related_request_id: RequestId | None = None
    # Transport-specific request context (the starlette Request for the SSE
    # transport, None for in-memory streams).
    request_context: Any = None


MessageMetadata = ClientMessageMetadata | ServerMessageMetadata | None


@dataclass
class SessionMessage:
    """A message with specific metadata for transport-specific features."""

    message: JSONRPCMessage
    metadata: MessageMetadata = None
