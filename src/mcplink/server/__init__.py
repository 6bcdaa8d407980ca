from .lowlevel import NotificationOptions, Server
from .models import InitializationOptions
from .server import MCPServer

__all__: list[str] = [
    "Server",
    "MCPServer",
    "NotificationOptions",
    "InitializationOptions",
]
