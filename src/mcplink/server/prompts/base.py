"""Base classes for mcplink prompts."""

from __future__ import annotations

import string
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Literal

import pydantic_core
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

import mcplink.types as types
from mcplink.shared.exceptions import ApplicationError, InvalidParamsError
from mcplink.utilities.func_metadata import FuncMetadata, func_metadata, is_async_callable

MAX_COMPLETION_VALUES = 100


class Message(BaseModel):
    """Base class for all prompt messages."""

    role: Literal["user", "assistant"]
    content: types.ContentBlock

    def __init__(self, content: str | types.ContentBlock, **kwargs: Any):
        if isinstance(content, str):
            content = types.TextContent(type="text", text=content)
        super().__init__(content=content, **kwargs)

    def to_mcp_message(self) -> types.PromptMessage:
        return types.PromptMessage(role=self.role, content=self.content)


class UserMessage(Message):
    """A message from the user."""

    role: Literal["user", "assistant"] = "user"

    def __init__(self, content: str | types.ContentBlock, **kwargs: Any):
        super().__init__(content=content, **kwargs)


class AssistantMessage(Message):
    """A message from the assistant."""

    role: Literal["user", "assistant"] = "assistant"

    def __init__(self, content: str | types.ContentBlock, **kwargs: Any):
        super().__init__(content=content, **kwargs)


message_validator = TypeAdapter[UserMessage | AssistantMessage](UserMessage | AssistantMessage)

SyncPromptResult = str | Message | dict[str, Any] | Sequence[str | Message | dict[str, Any]]
PromptResult = SyncPromptResult | Awaitable[SyncPromptResult]


class PromptArgument(BaseModel):
    """An argument that can be passed to a prompt."""

    name: str = Field(description="Name of the argument")
    description: str | None = Field(None, description="Description of what the argument does")
    required: bool = Field(default=False, description="Whether the argument is required")
    completions: list[str] | None = Field(None, description="Candidate values offered by completion/complete")

    def to_mcp_argument(self) -> types.PromptArgument:
        return types.PromptArgument(name=self.name, description=self.description, required=self.required)


class Prompt(BaseModel):
    """A prompt template that can be rendered with parameters.

    Backed either by a function or by a ``str.format`` template.
    """

    name: str = Field(description="Name of the prompt")
    title: str | None = Field(None, description="Human-readable title of the prompt")
    description: str | None = Field(None, description="Description of what the prompt does")
    arguments: list[PromptArgument] | None = Field(None, description="Arguments that can be passed to the prompt")
    fn: Callable[..., PromptResult | Awaitable[PromptResult]] | None = Field(None, exclude=True)
    fn_metadata: FuncMetadata | None = Field(None, exclude=True)
    is_async: bool = Field(False, description="Whether the prompt function is async")
    template: str | None = Field(None, description="str.format template, for template prompts")

    @classmethod
    def from_function(
        cls,
        fn: Callable[..., PromptResult | Awaitable[PromptResult]],
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        completions: dict[str, list[str]] | None = None,
    ) -> Prompt:
        """Create a Prompt from a function.

        The function can return:
        - A string (converted to a message)
        - A Message object
        - A dict (converted to a message)
        - A sequence of any of the above
        """
        func_name = name or fn.__name__
        if func_name == "<lambda>":
            raise ValueError("You must provide a name for lambda functions")

        func_arg_metadata = func_metadata(fn)
        parameters = func_arg_metadata.arg_model.model_json_schema(by_alias=True)

        arguments: list[PromptArgument] = []
        for param_name, param in parameters.get("properties", {}).items():
            arguments.append(
                PromptArgument(
                    name=param_name,
                    description=param.get("description"),
                    required=param_name in parameters.get("required", []),
                    completions=(completions or {}).get(param_name),
                )
            )

        return cls(
            name=func_name,
            title=title,
            description=description or fn.__doc__ or "",
            arguments=arguments,
            fn=fn,
            fn_metadata=func_arg_metadata,
            is_async=is_async_callable(fn),
        )

    @classmethod
    def from_template(
        cls,
        name: str,
        template: str,
        title: str | None = None,
        description: str | None = None,
        completions: dict[str, list[str]] | None = None,
    ) -> Prompt:
        """Create a Prompt from a ``str.format`` template; every field is a required argument."""
        field_names: list[str] = []
        for _, field_name, _, _ in string.Formatter().parse(template):
            if field_name is None:
                continue
            if not field_name.isidentifier():
                raise ValueError(f"Template field {field_name!r} of prompt {name} must be a plain name")
            if field_name not in field_names:
                field_names.append(field_name)

        return cls(
            name=name,
            title=title,
            description=description,
            arguments=[
                PromptArgument(name=field_name, required=True, completions=(completions or {}).get(field_name))
                for field_name in field_names
            ],
            template=template,
        )

    def to_mcp_prompt(self) -> types.Prompt:
        return types.Prompt(
            name=self.name,
            title=self.title,
            description=self.description,
            arguments=[argument.to_mcp_argument() for argument in self.arguments or []],
        )

    def get_argument(self, name: str) -> PromptArgument | None:
        return next((argument for argument in self.arguments or [] if argument.name == name), None)

    def complete(self, argument_name: str, value: str) -> types.Completion:
        """Complete an argument from its declared hints, by prefix."""
        argument = self.get_argument(argument_name)
        if argument is None or not argument.completions:
            return types.Completion(values=[], total=0, hasMore=False)
        matches = [candidate for candidate in argument.completions if candidate.startswith(value)]
        return types.Completion(
            values=matches[:MAX_COMPLETION_VALUES],
            total=len(matches),
            hasMore=len(matches) > MAX_COMPLETION_VALUES,
        )

    async def render(self, arguments: dict[str, Any] | None = None) -> list[Message]:
        """Render the prompt with arguments.

        Raises:
            InvalidParamsError: a required argument is missing or invalid.
            ApplicationError: the prompt function failed.
        """
        arguments = arguments or {}
        if self.arguments:
            required = {arg.name for arg in self.arguments if arg.required}
            missing = required - set(arguments)
            if missing:
                raise InvalidParamsError(
                    f"Missing required arguments: {', '.join(sorted(missing))}",
                    data={"missing": sorted(missing)},
                )

        if self.template is not None:
            return [UserMessage(self.template.format(**arguments))]

        assert self.fn is not None and self.fn_metadata is not None
        try:
            validated = self.fn_metadata.validate_arguments(arguments)
        except ValidationError as e:
            raise InvalidParamsError(
                f"Invalid arguments for prompt {self.name}",
                data={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

        try:
            result = await self.fn_metadata.call_fn(self.fn, self.is_async, validated)
        except Exception as e:
            raise ApplicationError(f"Error rendering prompt {self.name}: {e}") from e

        if not isinstance(result, list | tuple):
            result = [result]
        return [_to_message(msg) for msg in result]  # type: ignore[reportUnknownVariableType]


def _to_message(msg: Any) -> Message:
    try:
        if isinstance(msg, Message):
            return msg
        elif isinstance(msg, dict):
            return message_validator.validate_python(msg)
        elif isinstance(msg, str):
            return UserMessage(content=types.TextContent(type="text", text=msg))
        else:
            content = pydantic_core.to_json(msg, fallback=str, indent=2).decode()
            return Message(role="user", content=content)
    except ValidationError as e:
        raise ApplicationError(f"Could not convert prompt result to message: {msg}") from e
