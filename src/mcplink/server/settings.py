from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcplink.server.http_body import DEFAULT_MAX_BODY_BYTES
from mcplink.server.pagination import DEFAULT_PAGE_SIZE


class Settings(BaseSettings):
    """mcplink server settings.

    All settings can be configured via environment variables with the prefix MCPLINK_.
    For example, MCPLINK_DEBUG=true will set debug=True.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCPLINK_",
        env_file=".env",
        extra="ignore",
    )

    # Server settings
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = 8000
    sse_path: str = "/sse"
    message_path: str = "/messages/"
    max_body_bytes: int = Field(default=DEFAULT_MAX_BODY_BYTES, gt=0)
    ping_interval: float | None = None
    """Seconds between keep-alive comments on the SSE stream; None keeps sse-starlette's default."""

    # list settings
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, gt=0)

    # capability settings
    subscribe: bool = True
    """Offer ``resources.subscribe``."""
    list_changed: bool = True
    """Offer ``listChanged`` for resources, tools and prompts."""

    # registry settings
    warn_on_duplicate_resources: bool = True
    warn_on_duplicate_tools: bool = True
    warn_on_duplicate_prompts: bool = True

    # auth settings
    require_auth: bool = False
    """Guard the SSE endpoints with a bearer token. Needs a token validator."""
    required_scopes: list[str] = Field(default_factory=list)
