"""Cursor pagination for the list methods.

Cursors are opaque to clients: the urlsafe base64 of a small JSON object
holding the offset of the next page.
"""

import base64
import binascii
import json
from collections.abc import Sequence
from typing import TypeVar

from mcplink.shared.exceptions import InvalidParamsError

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 50


def encode_cursor(offset: int) -> str:
    return base64.urlsafe_b64encode(json.dumps({"offset": offset}).encode()).decode()


def decode_cursor(cursor: str) -> int:
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode()))
        offset = data["offset"]
    except (binascii.Error, ValueError, TypeError, KeyError) as e:
        raise InvalidParamsError(f"Invalid cursor: {cursor}", data={"cursor": cursor}) from e
    if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
        raise InvalidParamsError(f"Invalid cursor: {cursor}", data={"cursor": cursor})
    return offset


def paginate(items: Sequence[T], cursor: str | None, page_size: int = DEFAULT_PAGE_SIZE) -> tuple[list[T], str | None]:
    """One page of ``items`` and the cursor of the next one, or None when exhausted."""
    start_index = decode_cursor(cursor) if cursor is not None else 0
    page = list(items[start_index : start_index + page_size])
    next_cursor = None
    if start_index + page_size < len(items):
        next_cursor = encode_cursor(start_index + page_size)
    return page, next_cursor
