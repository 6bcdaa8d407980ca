"""Resource manager functionality."""

import base64
from collections.abc import Callable
from typing import Any

from pydantic import AnyUrl

import mcplink.types as types
from mcplink.server.resources.base import Resource, normalize_uri
from mcplink.server.resources.types import FunctionResource
from mcplink.server.storage import KeyNotFoundError
from mcplink.shared.exceptions import ApplicationError, McpError, ResourceNotFoundError
from mcplink.utilities.logging import get_logger

logger = get_logger(__name__)

ResourceContents = types.TextResourceContents | types.BlobResourceContents


class ResourceManager:
    """Manages mcplink resources.

    ``on_list_changed`` is called after every add or remove that changed the
    catalog.
    """

    def __init__(
        self,
        warn_on_duplicate_resources: bool = True,
        on_list_changed: Callable[[], None] | None = None,
    ):
        self._resources: dict[str, Resource] = {}
        self.warn_on_duplicate_resources = warn_on_duplicate_resources
        self.on_list_changed = on_list_changed

    def add_resource(self, resource: Resource) -> Resource:
        """Add a resource to the manager.

        Args:
            resource: A Resource instance to add

        Returns:
            The added resource. If a resource with the same URI already exists,
            returns the existing resource.
        """
        logger.debug("Adding resource %s (%s)", resource.uri, type(resource).__name__)
        existing = self._resources.get(resource.key)
        if existing:
            if self.warn_on_duplicate_resources:
                logger.warning(f"Resource already exists: {resource.uri}")
            return existing
        self._resources[resource.key] = resource
        self._changed()
        return resource

    def add_function(
        self,
        fn: Callable[..., Any],
        uri: str,
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
    ) -> Resource:
        """Add a resource whose content is produced by ``fn`` on each read."""
        return self.add_resource(
            FunctionResource.from_function(
                fn, uri=uri, name=name, title=title, description=description, mime_type=mime_type
            )
        )

    def remove_resource(self, uri: AnyUrl | str) -> bool:
        """Remove the resource registered under ``uri``. Returns False if there was none."""
        if self._resources.pop(normalize_uri(uri), None) is None:
            logger.debug("Nothing to remove for %s", uri)
            return False
        self._changed()
        return True

    def get_resource(self, uri: AnyUrl | str) -> Resource | None:
        """Get resource by URI."""
        return self._resources.get(normalize_uri(uri))

    def has_resource(self, uri: AnyUrl | str) -> bool:
        return normalize_uri(uri) in self._resources

    def list_resources(self) -> list[Resource]:
        """List all registered resources, in registration order."""
        resources = list(self._resources.values())
        logger.debug("Listing %d resources", len(resources))
        return resources

    async def read_resource(self, uri: AnyUrl | str) -> list[ResourceContents]:
        """Read the current content of a resource.

        Raises:
            ResourceNotFoundError: no resource is registered under ``uri``, or its
                backing store no longer has the key.
            ApplicationError: reading failed for another reason.
        """
        resource = self.get_resource(uri)
        if resource is None:
            raise ResourceNotFoundError(str(uri))

        try:
            data = await resource.read()
        except KeyNotFoundError:
            raise ResourceNotFoundError(str(uri)) from None
        except McpError:
            raise
        except Exception as e:
            logger.exception("Error reading resource %s", uri)
            raise ApplicationError(f"Error reading resource {uri}: {e}") from e

        if isinstance(data, bytes):
            return [
                types.BlobResourceContents(
                    uri=resource.uri,
                    blob=base64.b64encode(data).decode(),
                    mimeType=resource.mime_type,
                )
            ]
        return [types.TextResourceContents(uri=resource.uri, text=data, mimeType=resource.mime_type)]

    def _changed(self) -> None:
        if self.on_list_changed is not None:
            self.on_list_changed()
