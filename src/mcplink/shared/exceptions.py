from typing import Any

from mcplink.types import (
    CAPABILITY_NOT_SUPPORTED,
    CONNECTION_CLOSED,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    PROMPT_NOT_FOUND,
    REQUEST_TIMEOUT,
    RESOURCE_NOT_FOUND,
    TOOL_NOT_FOUND,
    ErrorData,
)


class McpError(Exception):
    """Exception carrying a JSON-RPC error object.

    Raised on the calling side when the remote peer answers with an error
    response, and used on the serving side as the base for every failure that
    is reported back to the peer as one.

    Attributes:
        error: The ErrorData object with the error code, message, and optional
               additional data
    """

    error: ErrorData

    def __init__(self, error: ErrorData):
        super().__init__(error.message)
        self.error = error

    @property
    def code(self) -> int:
        return self.error.code


class ProtocolError(McpError):
    """The peer broke the protocol. Fatal to the session."""


class ParseError(ProtocolError):
    """Bytes on the channel could not be decoded into a JSON-RPC envelope.

    ``code`` is ``PARSE_ERROR`` for invalid JSON and ``INVALID_REQUEST`` for
    well-formed JSON that is not a valid envelope.
    """

    def __init__(self, message: str, code: int = INVALID_REQUEST, data: Any | None = None):
        super().__init__(ErrorData(code=code, message=message, data=data))


class NegotiationError(McpError):
    """The ``initialize`` handshake did not produce a session."""


class IncompatibleVersionError(NegotiationError, ProtocolError):
    def __init__(self, requested: str, answered: str):
        super().__init__(
            ErrorData(
                code=INVALID_REQUEST,
                message=f"Unsupported protocol version from the server: {answered}",
                data={"requested": requested, "answered": answered},
            )
        )
        self.requested = requested
        self.answered = answered


class NegotiationTimeoutError(NegotiationError):
    def __init__(self, timeout: float):
        super().__init__(
            ErrorData(code=REQUEST_TIMEOUT, message=f"No initialize response within {timeout} seconds")
        )


class RequestTimeoutError(McpError):
    """No response arrived for one request in time. The session is unaffected."""

    def __init__(self, method: str, timeout: float):
        super().__init__(
            ErrorData(
                code=REQUEST_TIMEOUT,
                message=f"Timed out while waiting for response to {method}. Waited {timeout} seconds.",
            )
        )


class ConnectionClosedError(McpError):
    def __init__(self, message: str = "Connection closed"):
        super().__init__(ErrorData(code=CONNECTION_CLOSED, message=message))


class ApplicationError(McpError):
    """A request failed; the failure is reported to the peer and the session continues."""

    def __init__(self, message: str, code: int = INTERNAL_ERROR, data: Any | None = None):
        super().__init__(ErrorData(code=code, message=message, data=data))


class CapabilityError(ApplicationError):
    def __init__(self, method: str):
        super().__init__(
            f"Method {method!r} is not available in the negotiated capabilities",
            code=CAPABILITY_NOT_SUPPORTED,
            data={"method": method},
        )
        self.method = method


class InvalidParamsError(ApplicationError):
    def __init__(self, message: str, data: Any | None = None):
        super().__init__(message, code=INVALID_PARAMS, data=data)


class ResourceNotFoundError(ApplicationError):
    def __init__(self, uri: str):
        super().__init__(f"Unknown resource: {uri}", code=RESOURCE_NOT_FOUND, data={"uri": uri})


class ToolNotFoundError(ApplicationError):
    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}", code=TOOL_NOT_FOUND, data={"name": name})


class PromptNotFoundError(ApplicationError):
    def __init__(self, name: str):
        super().__init__(f"Unknown prompt: {name}", code=PROMPT_NOT_FOUND, data={"name": name})


class ToolError(ApplicationError):
    """A tool ran and failed.

    Reported to the client as a ``CallToolResult`` with ``isError`` set rather
    than as a JSON-RPC error; ``detail`` becomes its structured content.
    """

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message, data=detail)
        self.detail = detail


class TransportError(Exception):
    """The channel dropped. Recoverable by reconnecting and resyncing."""
