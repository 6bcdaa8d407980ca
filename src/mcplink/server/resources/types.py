"""Concrete resource implementations."""

import inspect
from collections.abc import Callable
from typing import Any

import pydantic_core
from pydantic import ConfigDict, Field

from mcplink.server.resources.base import Resource
from mcplink.server.storage import KeyValueStore


class TextResource(Resource):
    """A resource that reads from a string."""

    text: str = Field(description="Text content of the resource")

    async def read(self) -> str:
        """Read the text content."""
        return self.text


class BinaryResource(Resource):
    """A resource that reads from bytes."""

    data: bytes = Field(description="Binary content of the resource")
    mime_type: str = Field(default="application/octet-stream", description="MIME type of the resource content")

    async def read(self) -> bytes:
        """Read the binary content."""
        return self.data


class FunctionResource(Resource):
    """A resource that defers data loading by wrapping a function.

    The function is only called when the resource is read, allowing for lazy
    loading of potentially expensive data. This is particularly useful when
    listing resources, as the function won't be called until the resource
    is actually accessed.

    The function can return:
    - str for text content (default)
    - bytes for binary content
    - other types will be converted to JSON
    """

    fn: Callable[[], Any] = Field(exclude=True)

    async def read(self) -> str | bytes:
        """Read the resource by calling the wrapped function."""
        result = self.fn()
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, Resource):
            return await result.read()
        elif isinstance(result, str | bytes):
            return result
        else:
            return pydantic_core.to_json(result, fallback=str, indent=2).decode()

    @classmethod
    def from_function(
        cls,
        fn: Callable[..., Any],
        uri: str,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> "FunctionResource":
        """Create a FunctionResource from a function."""
        func_name = name or fn.__name__
        if func_name == "<lambda>":
            raise ValueError("You must provide a name for lambda functions")

        return cls(
            uri=uri,  # type: ignore[arg-type]
            name=func_name,
            title=title,
            description=description or fn.__doc__ or "",
            mime_type=mime_type or "text/plain",
            meta=meta,
            fn=fn,
        )


class StoreResource(Resource):
    """A resource backed by one key of a KeyValueStore, read on every access."""

    model_config = ConfigDict(validate_default=True, arbitrary_types_allowed=True)

    store: KeyValueStore = Field(exclude=True)
    store_key: str = Field(description="Key to read from the store")

    async def read(self) -> str | bytes:
        return await self.store.get(self.store_key)
