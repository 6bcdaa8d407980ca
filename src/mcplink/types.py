"""Wire types for the MCP protocol as spoken by mcplink.

Everything that crosses a transport is described here as a pydantic model:
the four JSON-RPC envelopes, the capability declarations exchanged during
``initialize``, and the typed requests, results and notifications for the
resource, tool, prompt, completion and logging methods.

Inbound requests and notifications are decoded into tagged unions keyed on
``method``. Methods that mcplink does not know land in ``UnknownRequest`` /
``UnknownNotification`` so that the receiving side can answer with
``METHOD_NOT_FOUND`` instead of failing validation.
"""

from collections.abc import Callable
from typing import Annotated, Any, Final, Generic, Literal, TypeAlias, TypeVar

from pydantic import (
    AnyUrl,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    RootModel,
    Tag,
    model_validator,
)

LATEST_PROTOCOL_VERSION: Final[str] = "2025-06-18"

JSONRPC_VERSION: Final[str] = "2.0"

# Standard JSON-RPC error codes
PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INVALID_PARAMS: Final[int] = -32602
INTERNAL_ERROR: Final[int] = -32603

# Application error codes, kept outside the reserved -32768..-32000 range
CONNECTION_CLOSED: Final[int] = -31000
CAPABILITY_NOT_SUPPORTED: Final[int] = -31001
RESOURCE_NOT_FOUND: Final[int] = -31002
TOOL_NOT_FOUND: Final[int] = -31003
PROMPT_NOT_FOUND: Final[int] = -31004
REQUEST_TIMEOUT: Final[int] = 408

UNKNOWN_METHOD_TAG: Final[str] = "*"

RequestId = Annotated[int, Field(strict=True)] | str
Cursor = str
Role = Literal["user", "assistant"]
LoggingLevel = Literal["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"]


class RequestParams(BaseModel):
    class Meta(BaseModel):
        model_config = ConfigDict(extra="allow")

    meta: Meta | None = Field(alias="_meta", default=None)

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class PaginatedRequestParams(RequestParams):
    cursor: Cursor | None = None
    """Opaque position returned as ``nextCursor`` by a previous list call."""


class NotificationParams(BaseModel):
    meta: dict[str, Any] | None = Field(alias="_meta", default=None)

    model_config = ConfigDict(extra="allow", populate_by_name=True)


RequestParamsT = TypeVar("RequestParamsT", bound=RequestParams | dict[str, Any] | None)
NotificationParamsT = TypeVar("NotificationParamsT", bound=NotificationParams | dict[str, Any] | None)
MethodT = TypeVar("MethodT", bound=str)


class Request(BaseModel, Generic[RequestParamsT, MethodT]):
    """Base class for typed requests."""

    method: MethodT
    params: RequestParamsT

    model_config = ConfigDict(extra="allow")


class PaginatedRequest(Request[PaginatedRequestParams | None, MethodT], Generic[MethodT]):
    params: PaginatedRequestParams | None = None


class Notification(BaseModel, Generic[NotificationParamsT, MethodT]):
    """Base class for typed notifications."""

    method: MethodT
    params: NotificationParamsT

    model_config = ConfigDict(extra="allow")


class Result(BaseModel):
    """Base class for results."""

    meta: dict[str, Any] | None = Field(alias="_meta", default=None)

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class PaginatedResult(Result):
    nextCursor: Cursor | None = None
    """Absent when the listing is exhausted."""


class EmptyResult(Result):
    """A response that indicates success but carries no data."""


# ---------------------------------------------------------------------------
# JSON-RPC envelopes
# ---------------------------------------------------------------------------


class JSONRPCRequest(Request[dict[str, Any] | None, str]):
    """A request that expects a response."""

    jsonrpc: Literal["2.0"]
    id: RequestId
    params: dict[str, Any] | None = None


class JSONRPCNotification(Notification[dict[str, Any] | None, str]):
    """A notification which does not expect a response."""

    jsonrpc: Literal["2.0"]
    params: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _reject_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "id" in data:
            raise ValueError("notifications must not carry an id")
        return data


class JSONRPCResponse(BaseModel):
    """A successful (non-error) response to a request."""

    jsonrpc: Literal["2.0"]
    id: RequestId
    result: dict[str, Any]

    model_config = ConfigDict(extra="allow")


class ErrorData(BaseModel):
    """Error information for JSON-RPC error responses."""

    code: int
    """The error type that occurred."""

    message: str
    """A short description of the error."""

    data: Any | None = None
    """Additional information about the error, defined by the sender."""

    model_config = ConfigDict(extra="allow")


class JSONRPCError(BaseModel):
    """A response to a request that indicates an error occurred.

    ``id`` is ``None`` only when the failing request could not be identified,
    e.g. for a parse error.
    """

    jsonrpc: Literal["2.0"]
    id: RequestId | None = None
    error: ErrorData

    model_config = ConfigDict(extra="allow")


def _envelope_kind(value: Any) -> str | None:
    if isinstance(value, BaseModel):
        return _ENVELOPE_TAGS.get(type(value))
    if not isinstance(value, dict):
        return None
    if "method" in value:
        return "request" if "id" in value else "notification"
    if "result" in value and "error" in value:
        return None
    if "error" in value:
        return "error"
    if "result" in value:
        return "response"
    return None


_ENVELOPE_TAGS: dict[type, str] = {
    JSONRPCRequest: "request",
    JSONRPCNotification: "notification",
    JSONRPCResponse: "response",
    JSONRPCError: "error",
}


class JSONRPCMessage(
    RootModel[
        Annotated[
            Annotated[JSONRPCRequest, Tag("request")]
            | Annotated[JSONRPCNotification, Tag("notification")]
            | Annotated[JSONRPCResponse, Tag("response")]
            | Annotated[JSONRPCError, Tag("error")],
            Discriminator(_envelope_kind),
        ]
    ]
):
    """Any JSON-RPC message, discriminated by the keys it carries."""


# ---------------------------------------------------------------------------
# Capabilities and lifecycle
# ---------------------------------------------------------------------------


class ResourcesCapability(BaseModel):
    subscribe: bool | None = None
    """Whether ``resources/subscribe`` and update notifications are available."""
    listChanged: bool | None = None
    """Whether list-changed notifications are sent for resources."""
    model_config = ConfigDict(extra="allow")


class ToolsCapability(BaseModel):
    listChanged: bool | None = None
    model_config = ConfigDict(extra="allow")


class PromptsCapability(BaseModel):
    listChanged: bool | None = None
    model_config = ConfigDict(extra="allow")


class CompletionsCapability(BaseModel):
    model_config = ConfigDict(extra="allow")


class LoggingCapability(BaseModel):
    model_config = ConfigDict(extra="allow")


class Capabilities(BaseModel):
    """A capability declaration. Both peers declare one during ``initialize``."""

    experimental: dict[str, dict[str, Any]] | None = None
    logging: LoggingCapability | None = None
    completions: CompletionsCapability | None = None
    prompts: PromptsCapability | None = None
    resources: ResourcesCapability | None = None
    tools: ToolsCapability | None = None

    model_config = ConfigDict(extra="allow")


class ClientCapabilities(Capabilities):
    """Capabilities the client is willing to use."""


class ServerCapabilities(Capabilities):
    """Capabilities the server offers."""


class Implementation(BaseModel):
    """Describes the name and version of an MCP implementation."""

    name: str
    version: str
    title: str | None = None
    model_config = ConfigDict(extra="allow")


class InitializeRequestParams(RequestParams):
    protocolVersion: str
    capabilities: ClientCapabilities
    clientInfo: Implementation


class InitializeRequest(Request[InitializeRequestParams, Literal["initialize"]]):
    """Sent from the client to the server when it first connects."""

    method: Literal["initialize"] = "initialize"
    params: InitializeRequestParams


class InitializeResult(Result):
    protocolVersion: str
    capabilities: ServerCapabilities
    serverInfo: Implementation
    instructions: str | None = None


class InitializedNotification(Notification[NotificationParams | None, Literal["notifications/initialized"]]):
    """Sent by the client once the initialize response has been processed."""

    method: Literal["notifications/initialized"] = "notifications/initialized"
    params: NotificationParams | None = None


class PingRequest(Request[RequestParams | None, Literal["ping"]]):
    method: Literal["ping"] = "ping"
    params: RequestParams | None = None


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str
    model_config = ConfigDict(extra="allow")


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    data: str
    """Base64-encoded image data."""
    mimeType: str
    model_config = ConfigDict(extra="allow")


class ResourceContents(BaseModel):
    uri: AnyUrl
    mimeType: str | None = None
    model_config = ConfigDict(extra="allow")


class TextResourceContents(ResourceContents):
    text: str


class BlobResourceContents(ResourceContents):
    blob: str
    """Base64-encoded binary data."""


class EmbeddedResource(BaseModel):
    type: Literal["resource"] = "resource"
    resource: TextResourceContents | BlobResourceContents
    model_config = ConfigDict(extra="allow")


ContentBlock: TypeAlias = Annotated[TextContent | ImageContent | EmbeddedResource, Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


class Resource(BaseModel):
    """A known resource the server can read."""

    uri: AnyUrl
    name: str
    title: str | None = None
    description: str | None = None
    mimeType: str | None = None
    meta: dict[str, Any] | None = Field(alias="_meta", default=None)

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ListResourcesRequest(PaginatedRequest[Literal["resources/list"]]):
    method: Literal["resources/list"] = "resources/list"


class ListResourcesResult(PaginatedResult):
    resources: list[Resource]


class ReadResourceRequestParams(RequestParams):
    uri: AnyUrl


class ReadResourceRequest(Request[ReadResourceRequestParams, Literal["resources/read"]]):
    method: Literal["resources/read"] = "resources/read"
    params: ReadResourceRequestParams


class ReadResourceResult(Result):
    contents: list[TextResourceContents | BlobResourceContents]


class SubscribeRequestParams(RequestParams):
    uri: AnyUrl


class SubscribeRequest(Request[SubscribeRequestParams, Literal["resources/subscribe"]]):
    method: Literal["resources/subscribe"] = "resources/subscribe"
    params: SubscribeRequestParams


class UnsubscribeRequestParams(RequestParams):
    uri: AnyUrl


class UnsubscribeRequest(Request[UnsubscribeRequestParams, Literal["resources/unsubscribe"]]):
    method: Literal["resources/unsubscribe"] = "resources/unsubscribe"
    params: UnsubscribeRequestParams


class ResourceUpdatedNotificationParams(NotificationParams):
    uri: AnyUrl


class ResourceUpdatedNotification(
    Notification[ResourceUpdatedNotificationParams, Literal["notifications/resources/updated"]]
):
    """A subscribed resource changed. Clients should re-read it."""

    method: Literal["notifications/resources/updated"] = "notifications/resources/updated"
    params: ResourceUpdatedNotificationParams


class ResourceListChangedNotification(
    Notification[NotificationParams | None, Literal["notifications/resources/list_changed"]]
):
    method: Literal["notifications/resources/list_changed"] = "notifications/resources/list_changed"
    params: NotificationParams | None = None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class Tool(BaseModel):
    """Definition for a tool the client can call."""

    name: str
    title: str | None = None
    description: str | None = None
    inputSchema: dict[str, Any]
    """A JSON Schema object describing the accepted arguments."""

    model_config = ConfigDict(extra="allow")


class ListToolsRequest(PaginatedRequest[Literal["tools/list"]]):
    method: Literal["tools/list"] = "tools/list"


class ListToolsResult(PaginatedResult):
    tools: list[Tool]


class CallToolRequestParams(RequestParams):
    name: str
    arguments: dict[str, Any] | None = None


class CallToolRequest(Request[CallToolRequestParams, Literal["tools/call"]]):
    method: Literal["tools/call"] = "tools/call"
    params: CallToolRequestParams


class CallToolResult(Result):
    content: list[ContentBlock]
    structuredContent: dict[str, Any] | None = None
    isError: bool = False


class ToolListChangedNotification(
    Notification[NotificationParams | None, Literal["notifications/tools/list_changed"]]
):
    method: Literal["notifications/tools/list_changed"] = "notifications/tools/list_changed"
    params: NotificationParams | None = None


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


class PromptArgument(BaseModel):
    name: str
    description: str | None = None
    required: bool | None = None
    model_config = ConfigDict(extra="allow")


class Prompt(BaseModel):
    """A prompt or prompt template that the server offers."""

    name: str
    title: str | None = None
    description: str | None = None
    arguments: list[PromptArgument] | None = None
    model_config = ConfigDict(extra="allow")


class ListPromptsRequest(PaginatedRequest[Literal["prompts/list"]]):
    method: Literal["prompts/list"] = "prompts/list"


class ListPromptsResult(PaginatedResult):
    prompts: list[Prompt]


class GetPromptRequestParams(RequestParams):
    name: str
    arguments: dict[str, str] | None = None


class GetPromptRequest(Request[GetPromptRequestParams, Literal["prompts/get"]]):
    method: Literal["prompts/get"] = "prompts/get"
    params: GetPromptRequestParams


class PromptMessage(BaseModel):
    role: Role
    content: ContentBlock
    model_config = ConfigDict(extra="allow")


class GetPromptResult(Result):
    description: str | None = None
    messages: list[PromptMessage]


class PromptListChangedNotification(
    Notification[NotificationParams | None, Literal["notifications/prompts/list_changed"]]
):
    method: Literal["notifications/prompts/list_changed"] = "notifications/prompts/list_changed"
    params: NotificationParams | None = None


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


class PromptReference(BaseModel):
    type: Literal["ref/prompt"] = "ref/prompt"
    name: str
    model_config = ConfigDict(extra="allow")


class ResourceReference(BaseModel):
    type: Literal["ref/resource"] = "ref/resource"
    uri: str
    model_config = ConfigDict(extra="allow")


class CompletionArgument(BaseModel):
    name: str
    value: str
    model_config = ConfigDict(extra="allow")


class CompleteRequestParams(RequestParams):
    ref: Annotated[PromptReference | ResourceReference, Field(discriminator="type")]
    argument: CompletionArgument


class CompleteRequest(Request[CompleteRequestParams, Literal["completion/complete"]]):
    method: Literal["completion/complete"] = "completion/complete"
    params: CompleteRequestParams


class Completion(BaseModel):
    values: list[str] = Field(max_length=100)
    total: int | None = None
    hasMore: bool | None = None
    model_config = ConfigDict(extra="allow")


class CompleteResult(Result):
    completion: Completion


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class SetLevelRequestParams(RequestParams):
    level: LoggingLevel


class SetLevelRequest(Request[SetLevelRequestParams, Literal["logging/setLevel"]]):
    method: Literal["logging/setLevel"] = "logging/setLevel"
    params: SetLevelRequestParams


class LoggingMessageNotificationParams(NotificationParams):
    level: LoggingLevel
    logger: str | None = None
    data: Any


class LoggingMessageNotification(
    Notification[LoggingMessageNotificationParams, Literal["notifications/message"]]
):
    method: Literal["notifications/message"] = "notifications/message"
    params: LoggingMessageNotificationParams


# ---------------------------------------------------------------------------
# Unknown methods and the tagged unions
# ---------------------------------------------------------------------------


class UnknownRequest(Request[dict[str, Any] | None, str]):
    """A request whose method is not part of the protocol surface."""

    params: dict[str, Any] | None = None


class UnknownNotification(Notification[dict[str, Any] | None, str]):
    """A notification whose method is not part of the protocol surface."""

    params: dict[str, Any] | None = None


def method_of(model: type[BaseModel]) -> str:
    """The literal method name a typed request or notification is bound to."""
    return model.model_fields["method"].default


def _method_discriminator(*models: type[BaseModel]) -> Callable[[Any], str]:
    methods = frozenset(method_of(m) for m in models)

    def discriminate(value: Any) -> str:
        method = value.get("method") if isinstance(value, dict) else getattr(value, "method", None)
        return method if method in methods else UNKNOWN_METHOD_TAG

    return discriminate


class ClientRequest(
    RootModel[
        Annotated[
            Annotated[PingRequest, Tag("ping")]
            | Annotated[InitializeRequest, Tag("initialize")]
            | Annotated[ListResourcesRequest, Tag("resources/list")]
            | Annotated[ReadResourceRequest, Tag("resources/read")]
            | Annotated[SubscribeRequest, Tag("resources/subscribe")]
            | Annotated[UnsubscribeRequest, Tag("resources/unsubscribe")]
            | Annotated[ListToolsRequest, Tag("tools/list")]
            | Annotated[CallToolRequest, Tag("tools/call")]
            | Annotated[ListPromptsRequest, Tag("prompts/list")]
            | Annotated[GetPromptRequest, Tag("prompts/get")]
            | Annotated[CompleteRequest, Tag("completion/complete")]
            | Annotated[SetLevelRequest, Tag("logging/setLevel")]
            | Annotated[UnknownRequest, Tag(UNKNOWN_METHOD_TAG)],
            Discriminator(
                _method_discriminator(
                    PingRequest,
                    InitializeRequest,
                    ListResourcesRequest,
                    ReadResourceRequest,
                    SubscribeRequest,
                    UnsubscribeRequest,
                    ListToolsRequest,
                    CallToolRequest,
                    ListPromptsRequest,
                    GetPromptRequest,
                    CompleteRequest,
                    SetLevelRequest,
                )
            ),
        ]
    ]
):
    pass


class ClientNotification(
    RootModel[
        Annotated[
            Annotated[InitializedNotification, Tag("notifications/initialized")]
            | Annotated[UnknownNotification, Tag(UNKNOWN_METHOD_TAG)],
            Discriminator(_method_discriminator(InitializedNotification)),
        ]
    ]
):
    pass


class ClientResult(RootModel[EmptyResult]):
    pass


class ServerRequest(
    RootModel[
        Annotated[
            Annotated[PingRequest, Tag("ping")] | Annotated[UnknownRequest, Tag(UNKNOWN_METHOD_TAG)],
            Discriminator(_method_discriminator(PingRequest)),
        ]
    ]
):
    pass


class ServerNotification(
    RootModel[
        Annotated[
            Annotated[ResourceUpdatedNotification, Tag("notifications/resources/updated")]
            | Annotated[ResourceListChangedNotification, Tag("notifications/resources/list_changed")]
            | Annotated[ToolListChangedNotification, Tag("notifications/tools/list_changed")]
            | Annotated[PromptListChangedNotification, Tag("notifications/prompts/list_changed")]
            | Annotated[LoggingMessageNotification, Tag("notifications/message")]
            | Annotated[UnknownNotification, Tag(UNKNOWN_METHOD_TAG)],
            Discriminator(
                _method_discriminator(
                    ResourceUpdatedNotification,
                    ResourceListChangedNotification,
                    ToolListChangedNotification,
                    PromptListChangedNotification,
                    LoggingMessageNotification,
                )
            ),
        ]
    ]
):
    pass


class ServerResult(
    RootModel[
        EmptyResult
        | InitializeResult
        | CompleteResult
        | GetPromptResult
        | ListPromptsResult
        | ListResourcesResult
        | ReadResourceResult
        | CallToolResult
        | ListToolsResult
    ]
):
    pass
