"""Capability negotiation.

Both peers declare a :class:`~mcplink.types.Capabilities` during
``initialize``. The session then runs on the intersection of the two: a feature
exists only if both sides declared it, and a boolean sub-option such as
``resources.subscribe`` is on only if both sides turned it on. The result is
frozen for the lifetime of the session and gates every method in both
directions.
"""

from dataclasses import dataclass
from typing import Any, Literal

from mcplink.shared.exceptions import CapabilityError
from mcplink.types import (
    Capabilities,
    CompletionsCapability,
    Implementation,
    LoggingCapability,
    PromptsCapability,
    ResourcesCapability,
    ToolsCapability,
)

ListKind = Literal["resources", "tools", "prompts"]

ALWAYS_ALLOWED: frozenset[str] = frozenset({"initialize", "notifications/initialized", "ping"})

# method -> (capability, sub-option that must be on)
METHOD_REQUIREMENTS: dict[str, tuple[str, str | None]] = {
    "resources/list": ("resources", None),
    "resources/read": ("resources", None),
    "resources/subscribe": ("resources", "subscribe"),
    "resources/unsubscribe": ("resources", "subscribe"),
    "notifications/resources/updated": ("resources", "subscribe"),
    "notifications/resources/list_changed": ("resources", "listChanged"),
    "tools/list": ("tools", None),
    "tools/call": ("tools", None),
    "notifications/tools/list_changed": ("tools", "listChanged"),
    "prompts/list": ("prompts", None),
    "prompts/get": ("prompts", None),
    "notifications/prompts/list_changed": ("prompts", "listChanged"),
    "completion/complete": ("completions", None),
    "logging/setLevel": ("logging", None),
    "notifications/message": ("logging", None),
}


def _both(a: bool | None, b: bool | None) -> bool:
    return bool(a) and bool(b)


def intersect_capabilities(local: Capabilities, remote: Capabilities) -> Capabilities:
    """The capability set both declarations agree on."""
    resources = None
    if local.resources is not None and remote.resources is not None:
        resources = ResourcesCapability(
            subscribe=_both(local.resources.subscribe, remote.resources.subscribe),
            listChanged=_both(local.resources.listChanged, remote.resources.listChanged),
        )

    tools = None
    if local.tools is not None and remote.tools is not None:
        tools = ToolsCapability(listChanged=_both(local.tools.listChanged, remote.tools.listChanged))

    prompts = None
    if local.prompts is not None and remote.prompts is not None:
        prompts = PromptsCapability(listChanged=_both(local.prompts.listChanged, remote.prompts.listChanged))

    experimental: dict[str, dict[str, Any]] | None = None
    if local.experimental is not None and remote.experimental is not None:
        experimental = {
            key: dict(options) for key, options in local.experimental.items() if key in remote.experimental
        }

    return Capabilities(
        experimental=experimental,
        logging=LoggingCapability() if local.logging is not None and remote.logging is not None else None,
        completions=CompletionsCapability()
        if local.completions is not None and remote.completions is not None
        else None,
        prompts=prompts,
        resources=resources,
        tools=tools,
    )


@dataclass(frozen=True)
class NegotiatedCapabilities:
    """The frozen capability set of one session."""

    capabilities: Capabilities

    @classmethod
    def negotiate(cls, local: Capabilities, remote: Capabilities) -> "NegotiatedCapabilities":
        return cls(intersect_capabilities(local, remote))

    def supports(self, method: str) -> bool:
        if method in ALWAYS_ALLOWED:
            return True
        requirement = METHOD_REQUIREMENTS.get(method)
        if requirement is None:
            # Not a capability-gated method; unknown ones are rejected elsewhere
            return True
        feature, option = requirement
        capability = getattr(self.capabilities, feature)
        if capability is None:
            return False
        if option is None:
            return True
        return bool(getattr(capability, option, False))

    def require(self, method: str) -> None:
        if not self.supports(method):
            raise CapabilityError(method)

    @property
    def subscribe(self) -> bool:
        return self.supports("resources/subscribe")

    def list_changed(self, kind: ListKind) -> bool:
        return self.supports(f"notifications/{kind}/list_changed")


@dataclass(frozen=True)
class NegotiatedSession:
    """What a completed ``initialize`` handshake produced."""

    protocol_version: str
    capabilities: NegotiatedCapabilities
    peer_info: Implementation
    instructions: str | None = None
    session_id: str | None = None
