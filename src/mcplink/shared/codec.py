"""Byte-level encoding and decoding of JSON-RPC envelopes.

Transports use :func:`encode` and :func:`decode` at the edge of the channel;
everything past them works with :class:`~mcplink.types.JSONRPCMessage`.
"""

import logging
from typing import Any

import pydantic_core
from pydantic import ValidationError

from mcplink.shared.exceptions import ParseError
from mcplink.types import (
    INVALID_REQUEST,
    JSONRPC_VERSION,
    PARSE_ERROR,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)

logger = logging.getLogger(__name__)

Envelope = JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError


def dump_message(message: JSONRPCMessage | Envelope) -> dict[str, Any]:
    """The JSON-compatible dict for an envelope, as it goes on the wire."""
    root = message.root if isinstance(message, JSONRPCMessage) else message
    data = root.model_dump(by_alias=True, mode="json", exclude_none=True)
    if isinstance(root, JSONRPCError) and root.id is None:
        # JSON-RPC requires an explicit null id when the request is unknown
        data["id"] = None
    return data


def encode(message: JSONRPCMessage | Envelope) -> bytes:
    return pydantic_core.to_json(dump_message(message))


def decode(data: bytes | str) -> JSONRPCMessage:
    """Decode one envelope.

    Raises:
        ParseError: ``PARSE_ERROR`` when ``data`` is not JSON,
            ``INVALID_REQUEST`` when it is JSON but not a valid envelope.
    """
    try:
        raw = pydantic_core.from_json(data)
    except ValueError as exc:
        raise ParseError(f"Parse error: {exc}", code=PARSE_ERROR) from exc

    if isinstance(raw, list):
        raise ParseError("Batch messages are not supported", code=INVALID_REQUEST)
    if not isinstance(raw, dict):
        raise ParseError("Invalid Request: expected a JSON object", code=INVALID_REQUEST)
    if raw.get("jsonrpc") != JSONRPC_VERSION:
        raise ParseError("Invalid Request: jsonrpc must be exactly '2.0'", code=INVALID_REQUEST)
    if "method" in raw and "id" in raw and raw["id"] is None:
        raise ParseError("Invalid Request: request id must not be null", code=INVALID_REQUEST)

    try:
        return JSONRPCMessage.model_validate(raw)
    except ValidationError as exc:
        logger.debug("Envelope failed validation: %s", exc)
        raise ParseError(
            "Invalid Request",
            code=INVALID_REQUEST,
            data=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc


def error_message(request_id: RequestId | None, error: ErrorData) -> JSONRPCMessage:
    return JSONRPCMessage(JSONRPCError(jsonrpc="2.0", id=request_id, error=error))
