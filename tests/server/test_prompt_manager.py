import pytest

import mcplink.types as types
from mcplink.server.prompts import AssistantMessage, Prompt, PromptManager, UserMessage
from mcplink.shared.exceptions import ApplicationError, InvalidParamsError, PromptNotFoundError


class TestPrompt:
    def test_arguments_from_signature(self):
        def review(code: str, language: str = "python") -> str:
            """Review some code."""
            return code

        prompt = Prompt.from_function(review, completions={"language": ["python", "rust"]})

        assert prompt.description == "Review some code."
        assert [(arg.name, arg.required) for arg in prompt.arguments or []] == [
            ("code", True),
            ("language", False),
        ]
        assert prompt.get_argument("language").completions == ["python", "rust"]  # type: ignore[union-attr]

    def test_arguments_from_template(self):
        prompt = Prompt.from_template("summarize", "Summarize {doc} in {style} style. Focus: {doc}")

        assert [(arg.name, arg.required) for arg in prompt.arguments or []] == [
            ("doc", True),
            ("style", True),
        ]

    def test_template_rejects_attribute_fields(self):
        with pytest.raises(ValueError, match="must be a plain name"):
            Prompt.from_template("bad", "Hello {user.name}")

    def test_to_mcp_prompt(self):
        prompt = Prompt.from_template("greet", "Hello {name}", description="Greets")

        mcp_prompt = prompt.to_mcp_prompt()

        assert mcp_prompt.name == "greet"
        assert mcp_prompt.description == "Greets"
        assert mcp_prompt.arguments == [types.PromptArgument(name="name", required=True)]

    @pytest.mark.anyio
    async def test_render_template(self):
        prompt = Prompt.from_template("greet", "Hello {name}")

        messages = await prompt.render({"name": "world"})

        assert messages == [UserMessage("Hello world")]

    @pytest.mark.anyio
    async def test_render_function_returning_messages(self):
        async def chat(topic: str) -> list[UserMessage | AssistantMessage]:
            return [UserMessage(f"Tell me about {topic}"), AssistantMessage("Sure.")]

        messages = await Prompt.from_function(chat).render({"topic": "tides"})

        assert [message.role for message in messages] == ["user", "assistant"]
        assert messages[0].content == types.TextContent(text="Tell me about tides")

    @pytest.mark.anyio
    async def test_render_function_returning_dict(self):
        def answer() -> dict[str, object]:
            return {"role": "assistant", "content": {"type": "text", "text": "42"}}

        messages = await Prompt.from_function(answer).render()

        assert len(messages) == 1
        assert messages[0].role == "assistant"
        assert messages[0].content == types.TextContent(text="42")

    @pytest.mark.anyio
    async def test_missing_required_argument(self):
        prompt = Prompt.from_template("summarize", "Summarize {doc} in {style} style")

        with pytest.raises(InvalidParamsError) as exc_info:
            await prompt.render({"doc": "x"})

        assert exc_info.value.error.data == {"missing": ["style"]}

    @pytest.mark.anyio
    async def test_function_failure(self):
        def broken() -> str:
            raise RuntimeError("nope")

        with pytest.raises(ApplicationError, match="Error rendering prompt broken"):
            await Prompt.from_function(broken).render()

    def test_complete_by_prefix(self):
        prompt = Prompt.from_template("pick", "{language}", completions={"language": ["python", "perl", "rust"]})

        completion = prompt.complete("language", "p")

        assert completion.values == ["python", "perl"]
        assert completion.total == 2
        assert completion.hasMore is False

    def test_complete_without_hints(self):
        prompt = Prompt.from_template("pick", "{language}")

        assert prompt.complete("language", "p").values == []
        assert prompt.complete("unknown", "").values == []

    def test_complete_caps_values(self):
        candidates = [f"v{i}" for i in range(150)]
        prompt = Prompt.from_template("pick", "{value}", completions={"value": candidates})

        completion = prompt.complete("value", "v")

        assert len(completion.values) == 100
        assert completion.total == 150
        assert completion.hasMore is True


class TestPromptManager:
    def test_add_and_list(self):
        changes: list[str] = []
        manager = PromptManager(on_list_changed=lambda: changes.append("prompts"))

        prompt = manager.add_prompt(Prompt.from_template("greet", "Hello {name}"))

        assert manager.list_prompts() == [prompt]
        assert manager.get_prompt("greet") is prompt
        assert changes == ["prompts"]

    def test_duplicate_keeps_the_first(self):
        manager = PromptManager(warn_on_duplicate_prompts=False)
        first = manager.add_prompt(Prompt.from_template("greet", "Hello {name}"))

        assert manager.add_prompt(Prompt.from_template("greet", "Hi {name}")) is first

    def test_remove(self):
        manager = PromptManager()
        manager.add_prompt(Prompt.from_template("greet", "Hello {name}"))

        assert manager.remove_prompt("greet") is True
        assert manager.remove_prompt("greet") is False
        assert manager.list_prompts() == []

    @pytest.mark.anyio
    async def test_render_prompt(self):
        manager = PromptManager()
        manager.add_prompt(Prompt.from_template("greet", "Hello {name}", description="Greets"))

        result = await manager.render_prompt("greet", {"name": "Ada"})

        assert result.description == "Greets"
        assert result.messages == [types.PromptMessage(role="user", content=types.TextContent(text="Hello Ada"))]

    @pytest.mark.anyio
    async def test_unknown_prompt(self):
        with pytest.raises(PromptNotFoundError) as exc_info:
            await PromptManager().render_prompt("missing")

        assert exc_info.value.code == types.PROMPT_NOT_FOUND

    def test_complete_unknown_prompt(self):
        with pytest.raises(PromptNotFoundError):
            PromptManager().complete("missing", "arg", "")
