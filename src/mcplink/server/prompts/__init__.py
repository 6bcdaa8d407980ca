from .base import AssistantMessage, Message, Prompt, PromptArgument, UserMessage
from .prompt_manager import PromptManager

__all__ = ["Prompt", "PromptArgument", "PromptManager", "Message", "UserMessage", "AssistantMessage"]
