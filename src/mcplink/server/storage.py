import logging
from typing import Protocol, runtime_checkable

import anyio

logger = logging.getLogger(__name__)


class KeyNotFoundError(KeyError):
    """The key is not present in the store."""


@runtime_checkable
class KeyValueStore(Protocol):
    """Abstract interface for the storage backend resources can be read from.

    mcplink never writes a schema of its own; a store-backed resource simply
    reads one key on every ``resources/read``.
    """

    async def get(self, key: str) -> str | bytes:
        """Return the value stored under ``key``.

        Raises:
            KeyNotFoundError: if there is no such key.
        """
        ...

    async def put(self, key: str, value: str | bytes) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        ...

    async def delete(self, key: str) -> None:
        """Remove ``key``.

        Raises:
            KeyNotFoundError: if there is no such key.
        """
        ...


class InMemoryStore:
    """Dict-backed implementation of the KeyValueStore interface."""

    def __init__(self, initial: dict[str, str | bytes] | None = None) -> None:
        self._data: dict[str, str | bytes] = dict(initial or {})
        self._lock = anyio.Lock()

    async def get(self, key: str) -> str | bytes:
        async with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise KeyNotFoundError(key) from None

    async def put(self, key: str, value: str | bytes) -> None:
        async with self._lock:
            self._data[key] = value
        logger.debug("Stored key %s", key)

    async def delete(self, key: str) -> None:
        async with self._lock:
            if key not in self._data:
                raise KeyNotFoundError(key)
            del self._data[key]
        logger.debug("Deleted key %s", key)

    def keys(self) -> list[str]:
        return list(self._data)
