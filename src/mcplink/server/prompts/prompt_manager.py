"""Prompt management functionality."""

from collections.abc import Callable
from typing import Any

import mcplink.types as types
from mcplink.server.prompts.base import Prompt
from mcplink.shared.exceptions import PromptNotFoundError
from mcplink.utilities.logging import get_logger

logger = get_logger(__name__)


class PromptManager:
    """Manages mcplink prompts.

    ``on_list_changed`` is called after every add or remove that changed the
    catalog.
    """

    def __init__(
        self,
        warn_on_duplicate_prompts: bool = True,
        on_list_changed: Callable[[], None] | None = None,
    ):
        self._prompts: dict[str, Prompt] = {}
        self.warn_on_duplicate_prompts = warn_on_duplicate_prompts
        self.on_list_changed = on_list_changed

    def add_prompt(self, prompt: Prompt) -> Prompt:
        """Add a prompt to the manager. An existing prompt with the same name wins."""
        logger.debug("Adding prompt %s", prompt.name)
        existing = self._prompts.get(prompt.name)
        if existing:
            if self.warn_on_duplicate_prompts:
                logger.warning(f"Prompt already exists: {prompt.name}")
            return existing
        self._prompts[prompt.name] = prompt
        if self.on_list_changed is not None:
            self.on_list_changed()
        return prompt

    def remove_prompt(self, name: str) -> bool:
        if self._prompts.pop(name, None) is None:
            return False
        logger.debug("Removed prompt %s", name)
        if self.on_list_changed is not None:
            self.on_list_changed()
        return True

    def get_prompt(self, name: str) -> Prompt | None:
        """Get prompt by name."""
        return self._prompts.get(name)

    def list_prompts(self) -> list[Prompt]:
        """List all registered prompts, in registration order."""
        return list(self._prompts.values())

    async def render_prompt(self, name: str, arguments: dict[str, Any] | None = None) -> types.GetPromptResult:
        """Render a prompt by name with arguments."""
        prompt = self.get_prompt(name)
        if not prompt:
            raise PromptNotFoundError(name)

        messages = await prompt.render(arguments)
        return types.GetPromptResult(
            description=prompt.description,
            messages=[message.to_mcp_message() for message in messages],
        )

    def complete(self, name: str, argument_name: str, value: str) -> types.Completion:
        prompt = self.get_prompt(name)
        if not prompt:
            raise PromptNotFoundError(name)
        return prompt.complete(argument_name, value)
