import pytest

from mcplink.shared.capabilities import NegotiatedCapabilities, intersect_capabilities
from mcplink.shared.exceptions import CapabilityError
from mcplink.types import (
    CAPABILITY_NOT_SUPPORTED,
    Capabilities,
    ClientCapabilities,
    LoggingCapability,
    PromptsCapability,
    ResourcesCapability,
    ServerCapabilities,
    ToolsCapability,
)

CLIENT_EVERYTHING = ClientCapabilities(
    resources=ResourcesCapability(subscribe=True, listChanged=True),
    tools=ToolsCapability(listChanged=True),
    prompts=PromptsCapability(listChanged=True),
    logging=LoggingCapability(),
)


class TestIntersection:
    def test_feature_needs_both_sides(self):
        server = ServerCapabilities(tools=ToolsCapability(listChanged=True))
        result = intersect_capabilities(CLIENT_EVERYTHING, server)
        assert result.tools == ToolsCapability(listChanged=True)
        assert result.resources is None
        assert result.prompts is None
        assert result.logging is None

    def test_sub_option_needs_both_true(self):
        server = ServerCapabilities(resources=ResourcesCapability(subscribe=False, listChanged=True))
        result = intersect_capabilities(CLIENT_EVERYTHING, server)
        assert result.resources == ResourcesCapability(subscribe=False, listChanged=True)

    def test_absent_sub_option_counts_as_false(self):
        server = ServerCapabilities(resources=ResourcesCapability())
        result = intersect_capabilities(CLIENT_EVERYTHING, server)
        assert result.resources == ResourcesCapability(subscribe=False, listChanged=False)

    def test_experimental_keeps_shared_keys(self):
        local = Capabilities(experimental={"a": {"x": 1}, "b": {}})
        remote = Capabilities(experimental={"b": {}, "c": {}})
        assert intersect_capabilities(local, remote).experimental == {"b": {}}

    def test_symmetric(self):
        server = ServerCapabilities(
            resources=ResourcesCapability(subscribe=True),
            tools=ToolsCapability(),
        )
        assert intersect_capabilities(CLIENT_EVERYTHING, server) == intersect_capabilities(server, CLIENT_EVERYTHING)


class TestNegotiatedCapabilities:
    def test_method_gating(self):
        negotiated = NegotiatedCapabilities.negotiate(
            CLIENT_EVERYTHING,
            ServerCapabilities(resources=ResourcesCapability(subscribe=False, listChanged=True)),
        )
        assert negotiated.supports("resources/list")
        assert negotiated.supports("resources/read")
        assert negotiated.supports("notifications/resources/list_changed")
        assert not negotiated.supports("resources/subscribe")
        assert not negotiated.supports("notifications/resources/updated")
        assert not negotiated.supports("tools/call")
        assert not negotiated.supports("logging/setLevel")

    @pytest.mark.parametrize("method", ["initialize", "notifications/initialized", "ping"])
    def test_lifecycle_methods_always_allowed(self, method: str):
        negotiated = NegotiatedCapabilities.negotiate(Capabilities(), Capabilities())
        assert negotiated.supports(method)

    def test_require_raises_capability_error(self):
        negotiated = NegotiatedCapabilities.negotiate(CLIENT_EVERYTHING, ServerCapabilities())
        with pytest.raises(CapabilityError) as exc_info:
            negotiated.require("tools/list")
        assert exc_info.value.code == CAPABILITY_NOT_SUPPORTED
        assert exc_info.value.method == "tools/list"

    def test_list_changed_by_kind(self):
        negotiated = NegotiatedCapabilities.negotiate(
            CLIENT_EVERYTHING,
            ServerCapabilities(tools=ToolsCapability(listChanged=True), prompts=PromptsCapability()),
        )
        assert negotiated.list_changed("tools")
        assert not negotiated.list_changed("prompts")
        assert not negotiated.list_changed("resources")
        assert not negotiated.subscribe

    def test_frozen(self):
        negotiated = NegotiatedCapabilities.negotiate(CLIENT_EVERYTHING, ServerCapabilities())
        with pytest.raises(AttributeError):
            negotiated.capabilities = Capabilities()  # type: ignore[misc]
