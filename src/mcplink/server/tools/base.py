from __future__ import annotations as _annotations

from collections.abc import Callable
from typing import Any

import jsonschema
from pydantic import BaseModel, Field, ValidationError

import mcplink.types as types
from mcplink.shared.exceptions import InvalidParamsError, ToolError
from mcplink.utilities.func_metadata import FuncMetadata, func_metadata, is_async_callable


class Tool(BaseModel):
    """Internal tool registration info."""

    fn: Callable[..., Any] = Field(exclude=True)
    name: str = Field(description="Name of the tool")
    title: str | None = Field(None, description="Human-readable title of the tool")
    description: str = Field(description="Description of what the tool does")
    parameters: dict[str, Any] = Field(description="JSON schema for tool parameters")
    fn_metadata: FuncMetadata = Field(
        description="Metadata about the function including a pydantic model for tool arguments"
    )
    is_async: bool = Field(description="Whether the tool is async")

    @classmethod
    def from_function(
        cls,
        fn: Callable[..., Any],
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> Tool:
        """Create a Tool from a function.

        The input schema is derived from the signature unless ``input_schema``
        is given.
        """
        func_name = name or fn.__name__

        if func_name == "<lambda>":
            raise ValueError("You must provide a name for lambda functions")

        func_doc = description or fn.__doc__ or ""
        func_arg_metadata = func_metadata(fn)
        parameters = input_schema or func_arg_metadata.arg_model.model_json_schema(by_alias=True)
        try:
            jsonschema.validators.validator_for(parameters).check_schema(parameters)
        except jsonschema.SchemaError as e:
            raise ValueError(f"Invalid input schema for tool {func_name}: {e.message}") from e

        return cls(
            fn=fn,
            name=func_name,
            title=title,
            description=func_doc,
            parameters=parameters,
            fn_metadata=func_arg_metadata,
            is_async=is_async_callable(fn),
        )

    def to_mcp_tool(self) -> types.Tool:
        return types.Tool(name=self.name, title=self.title, description=self.description, inputSchema=self.parameters)

    def validate_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Check ``arguments`` against the input schema and the signature.

        Raises:
            InvalidParamsError: with ``{path, validator}`` detail on a schema
                mismatch, or the pydantic errors when the signature rejects them.
        """
        try:
            jsonschema.validate(instance=arguments, schema=self.parameters)
        except jsonschema.ValidationError as e:
            raise InvalidParamsError(
                f"Input validation error: {e.message}",
                data={"path": list(e.absolute_path), "validator": e.validator},
            ) from e
        try:
            return self.fn_metadata.validate_arguments(arguments)
        except ValidationError as e:
            raise InvalidParamsError(
                f"Input validation error: {e.error_count()} invalid argument(s)",
                data={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

    async def run(self, arguments: dict[str, Any]) -> Any:
        """Run the tool with arguments.

        Arguments are fully validated before the function is called, so an
        InvalidParamsError always means the function never ran.
        """
        validated = self.validate_arguments(arguments)
        try:
            return await self.fn_metadata.call_fn(self.fn, self.is_async, validated)
        except ToolError:
            raise
        except Exception as e:
            raise ToolError(f"Error executing tool {self.name}: {e}", detail={"type": type(e).__name__}) from e
