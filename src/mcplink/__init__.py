"""A host, client and server for the Model Context Protocol over Server-Sent Events.

Use mcplink to:

- Serve resources, tools and prompts over SSE
- Connect a host to any number of such servers and keep it in sync
- Subscribe to resources and receive change notifications

## Example - create a [`MCPServer`][mcplink.server.MCPServer]

```python
from mcplink.server import MCPServer

server = MCPServer("Demo")

@server.tool()
def add(a: int, b: int) -> int:
    \"\"\"Add two numbers\"\"\"
    return a + b

if __name__ == "__main__":
    server.run()
```

## Example - connect a client

```python
from mcplink import ClientSession, sse_client

async with sse_client("http://127.0.0.1:8000/sse") as (read, write):
    async with ClientSession(read, write) as session:
        await session.initialize()
        tools = await session.list_tools()
        result = await session.call_tool("add", {"a": 5, "b": 3})
```

"""

from .client.host import Host
from .client.session import ClientSession
from .client.sse import sse_client
from .server.session import ServerSession
from .shared.exceptions import (
    ApplicationError,
    CapabilityError,
    McpError,
    ParseError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from .types import (
    CallToolRequest,
    CallToolResult,
    ClientCapabilities,
    ErrorData,
    GetPromptResult,
    Implementation,
    InitializeRequest,
    InitializeResult,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ListPromptsResult,
    ListResourcesResult,
    ListToolsResult,
    Prompt,
    ReadResourceResult,
    Resource,
    ServerCapabilities,
    Tool,
)

__all__ = [
    "ApplicationError",
    "CallToolRequest",
    "CallToolResult",
    "CapabilityError",
    "ClientCapabilities",
    "ClientSession",
    "ErrorData",
    "GetPromptResult",
    "Host",
    "Implementation",
    "InitializeRequest",
    "InitializeResult",
    "JSONRPCError",
    "JSONRPCMessage",
    "JSONRPCNotification",
    "JSONRPCRequest",
    "JSONRPCResponse",
    "ListPromptsResult",
    "ListResourcesResult",
    "ListToolsResult",
    "McpError",
    "ParseError",
    "Prompt",
    "ProtocolError",
    "ReadResourceResult",
    "RequestTimeoutError",
    "Resource",
    "ServerCapabilities",
    "ServerSession",
    "Tool",
    "TransportError",
]
