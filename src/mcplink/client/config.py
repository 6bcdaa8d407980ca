"""Host configuration: which servers to connect to and how."""

# stdlib imports
import json
import os
import re
import shlex
from datetime import timedelta
from pathlib import Path
from typing import Any, cast

# third party imports
from pydantic import BaseModel, Field, model_validator

import mcplink.types as types
from mcplink.client.session import DEFAULT_CLIENT_CAPABILITIES


class ServerConfig(BaseModel):
    """One server the host connects to over SSE."""

    url: str
    """The SSE endpoint, e.g. ``http://127.0.0.1:8000/sse``."""
    headers: dict[str, str] | None = None
    command: str | None = None
    """Command that starts the server before connecting. May hold arguments."""
    args: list[str] | None = None
    env: dict[str, str] | None = None
    capabilities: types.ClientCapabilities | None = None
    """Capabilities to declare; defaults to everything the client supports."""
    timeout: float = 5
    sse_read_timeout: float = 60 * 5
    read_timeout_seconds: float | None = None

    def _parse_command(self) -> list[str]:
        """Split the command string into parts, handling quotes and line continuations."""
        if self.command is None:
            return []
        cleaned_command = self.command.replace("\\\n", " ")
        cleaned_command = " ".join(cleaned_command.split())
        return shlex.split(cleaned_command)

    @property
    def launch_argv(self) -> list[str] | None:
        """The full argv to start the server, or None when it is started elsewhere."""
        command_parts = self._parse_command()
        if not command_parts:
            return None
        return command_parts + (self.args or [])

    @property
    def launch_env(self) -> dict[str, str] | None:
        """Environment for the launched process: ours, overlaid with ``env``."""
        if self.env is None:
            return None
        return {**os.environ, **self.env}

    @property
    def client_capabilities(self) -> types.ClientCapabilities:
        return self.capabilities or DEFAULT_CLIENT_CAPABILITIES

    @property
    def read_timeout(self) -> timedelta | None:
        if self.read_timeout_seconds is None:
            return None
        return timedelta(seconds=self.read_timeout_seconds)


class HostConfig(BaseModel):
    """Configuration for every server a host talks to, keyed by server name."""

    servers: dict[str, ServerConfig] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def handle_field_aliases(cls, data: Any) -> Any:
        """Accept both 'servers' and 'mcpServers'; 'servers' wins when both exist."""
        if not isinstance(data, dict):
            return data
        data = dict(cast(dict[str, Any], data))
        if "mcpServers" in data:
            mcp_servers = data.pop("mcpServers")
            data.setdefault("servers", mcp_servers)
        return data

    @classmethod
    def _substitute_env(cls, data: Any, environ: dict[str, str]) -> Any:
        """Recursively replace ${env:NAME} placeholders with environment values."""
        if isinstance(data, str):

            def replace_env(match: re.Match[str]) -> str:
                key = match.group(1)
                if key in environ:
                    return environ[key]
                raise ValueError(f"Missing environment variable: '{key}'")

            return re.sub(r"\$\{env:([^}]+)\}", replace_env, data)

        elif isinstance(data, dict):
            dict_data = cast(dict[str, Any], data)
            return {k: cls._substitute_env(v, environ) for k, v in dict_data.items()}

        elif isinstance(data, list):
            list_data = cast(list[Any], data)
            return [cls._substitute_env(item, environ) for item in list_data]

        else:
            return data

    @classmethod
    def _strip_json_comments(cls, content: str) -> str:
        """Strip // comments from JSON content, leaving // inside strings alone."""
        result: list[str] = []

        for line in content.split("\n"):
            in_string = False
            escaped = False
            comment_start = -1

            for i, char in enumerate(line):
                if escaped:
                    escaped = False
                    continue

                if char == "\\" and in_string:
                    escaped = True
                    continue

                if char == '"':
                    in_string = not in_string
                    continue

                if not in_string and char == "/" and i + 1 < len(line) and line[i + 1] == "/":
                    comment_start = i
                    break

            if comment_start != -1:
                line = line[:comment_start].rstrip()

            result.append(line)

        return "\n".join(result)

    @classmethod
    def from_json(cls, content: str, environ: dict[str, str] | None = None) -> "HostConfig":
        """Parse configuration text. ``environ`` defaults to ``os.environ``."""
        data = json.loads(cls._strip_json_comments(content))
        data = cls._substitute_env(data, dict(os.environ) if environ is None else environ)
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, config_path: Path | str, environ: dict[str, str] | None = None) -> "HostConfig":
        """Load configuration from a JSON file.

        Args:
            config_path: Path to the file; ``~`` and ``$VARS`` are expanded.
            environ: Values for ${env:NAME} placeholders, defaulting to ``os.environ``.
        """
        config_path = Path(os.path.expandvars(config_path)).expanduser()

        with open(config_path) as config_file:
            return cls.from_json(config_file.read(), environ=environ)
