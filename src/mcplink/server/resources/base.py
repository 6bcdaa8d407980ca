"""Base classes and interfaces for mcplink resources."""

import abc
from typing import Annotated, Any

from pydantic import (
    AnyUrl,
    BaseModel,
    ConfigDict,
    Field,
    UrlConstraints,
    ValidationInfo,
    field_validator,
)

import mcplink.types as types


def normalize_uri(uri: AnyUrl | str) -> str:
    """The canonical string form resources and subscriptions are keyed by."""
    return str(uri) if isinstance(uri, AnyUrl) else str(AnyUrl(uri))


class Resource(BaseModel, abc.ABC):
    """Base class for all resources.

    The URI is the identity of a resource and never changes; the content is
    produced anew on every read.
    """

    model_config = ConfigDict(validate_default=True)

    uri: Annotated[AnyUrl, UrlConstraints(host_required=False)] = Field(default=..., description="URI of the resource")
    name: str | None = Field(description="Name of the resource", default=None)
    title: str | None = Field(description="Human-readable title of the resource", default=None)
    description: str | None = Field(description="Description of the resource", default=None)
    mime_type: str = Field(
        default="text/plain",
        description="MIME type of the resource content",
    )
    meta: dict[str, Any] | None = Field(default=None, description="Free-form metadata sent as _meta")

    @field_validator("name", mode="before")
    @classmethod
    def set_default_name(cls, name: str | None, info: ValidationInfo) -> str:
        """Set default name from URI if not provided."""
        if name:
            return name
        if uri := info.data.get("uri"):
            return str(uri)
        raise ValueError("Either name or uri must be provided")

    @field_validator("mime_type")
    @classmethod
    def validate_mimetype(cls, mime_type: str) -> str:
        main_type, _, sub_type = mime_type.strip().partition("/")
        if not main_type or not sub_type:
            raise ValueError(f"Invalid MIME type: '{mime_type}'. Must follow 'type/subtype' format.")
        return mime_type

    @property
    def key(self) -> str:
        """The normalized URI the resource is registered under."""
        return str(self.uri)

    def to_mcp_resource(self) -> types.Resource:
        return types.Resource(
            uri=self.uri,
            name=self.name or str(self.uri),
            title=self.title,
            description=self.description,
            mimeType=self.mime_type,
            _meta=self.meta,
        )

    @abc.abstractmethod
    async def read(self) -> str | bytes:
        """Read the resource content."""
        pass  # pragma: no cover
