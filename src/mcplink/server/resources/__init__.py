from .base import Resource
from .resource_manager import ResourceManager
from .types import BinaryResource, FunctionResource, StoreResource, TextResource

__all__ = [
    "Resource",
    "TextResource",
    "BinaryResource",
    "FunctionResource",
    "StoreResource",
    "ResourceManager",
]
