from collections.abc import AsyncGenerator, Generator

import anyio
import httpx
import pytest

import mcplink.types as types
from mcplink.client.session import ClientSession
from mcplink.client.sse import sse_client
from mcplink.shared.exceptions import McpError, TransportError
from tests.test_helpers import GOOD_TOKEN, READ_ONLY_TOKEN, free_port, server_process


@pytest.fixture
def server_port() -> int:
    return free_port()


@pytest.fixture
def server_url(server_port: int) -> str:
    return f"http://127.0.0.1:{server_port}"


@pytest.fixture
def server(server_port: int) -> Generator[None, None, None]:
    with server_process(server_port):
        yield


@pytest.fixture
def auth_server(server_port: int) -> Generator[None, None, None]:
    with server_process(server_port, require_auth=True):
        yield


@pytest.fixture
async def session(server: None, server_url: str) -> AsyncGenerator[ClientSession, None]:
    async with sse_client(f"{server_url}/sse") as streams:
        async with ClientSession(*streams) as session:
            with anyio.fail_after(5):
                await session.initialize()
            yield session


@pytest.mark.anyio
async def test_raw_sse_connection(server: None, server_url: str) -> None:
    """The first event names the endpoint to POST to."""
    async with httpx.AsyncClient(base_url=server_url) as client:
        with anyio.fail_after(3):
            async with client.stream("GET", "/sse") as response:
                assert response.status_code == 200
                assert response.headers["content-type"].startswith("text/event-stream")

                lines: list[str] = []
                async for line in response.aiter_lines():
                    lines.append(line)
                    if line.startswith("data: "):
                        break

    assert "event: endpoint" in lines
    assert lines[-1].startswith("data: /messages/?session_id=")


@pytest.mark.anyio
async def test_initialize_over_sse(session: ClientSession) -> None:
    negotiated = session.negotiated_session

    assert negotiated is not None
    assert negotiated.peer_info.name == "demo"
    assert negotiated.instructions == "A demo server"
    assert negotiated.protocol_version == types.LATEST_PROTOCOL_VERSION


@pytest.mark.anyio
async def test_requests_over_sse(session: ClientSession) -> None:
    with anyio.fail_after(5):
        tools = await session.list_all_tools()
        added = await session.call_tool("add", {"a": 2, "b": 3})
        readme = await session.read_resource("memo://readme")
        prompt = await session.get_prompt("greet", {"name": "alice"})
        completion = await session.complete(types.PromptReference(name="greet"), {"name": "name", "value": "b"})

    assert sorted(tool.name for tool in tools) == ["add", "echo"]
    assert added.content == [types.TextContent(text="5")]
    assert isinstance(readme.contents[0], types.TextResourceContents)
    assert readme.contents[0].text == "hello from demo"
    assert prompt.messages[0].content == types.TextContent(text="Say hello to alice")
    assert completion.completion.values == ["bob"]


@pytest.mark.anyio
async def test_error_response_over_sse(session: ClientSession) -> None:
    with anyio.fail_after(5):
        with pytest.raises(McpError) as exc_info:
            await session.call_tool("add", {"a": "two", "b": 3})
        # the session is still usable
        await session.send_ping()

    assert exc_info.value.code == types.INVALID_PARAMS


@pytest.mark.anyio
async def test_concurrent_requests_over_sse(session: ClientSession) -> None:
    results: dict[int, str] = {}

    async def echo(i: int) -> None:
        result = await session.call_tool("echo", {"text": f"message {i}"})
        content = result.content[0]
        assert isinstance(content, types.TextContent)
        results[i] = content.text

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            for i in range(10):
                tg.start_soon(echo, i)

    assert results == {i: f"message {i}" for i in range(10)}


@pytest.mark.anyio
async def test_server_going_away_closes_the_session(server_port: int, server_url: str) -> None:
    with server_process(server_port) as process:
        async with sse_client(f"{server_url}/sse") as streams:
            async with ClientSession(*streams) as session:
                with anyio.fail_after(5):
                    await session.initialize()

                process.kill()
                process.join()

                with anyio.fail_after(5):
                    await session.wait_closed()

                assert isinstance(session.transport_error, TransportError)


@pytest.mark.anyio
async def test_sse_requires_token(auth_server: None, server_url: str) -> None:
    async with httpx.AsyncClient(base_url=server_url) as client:
        missing = await client.get("/sse")
        wrong = await client.get("/sse", headers={"Authorization": "Bearer nope"})
        short_scope = await client.get("/sse", headers={"Authorization": f"Bearer {READ_ONLY_TOKEN}"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert 'error="invalid_token"' in missing.headers["www-authenticate"]
    assert short_scope.status_code == 403
    assert short_scope.json()["error"] == "insufficient_scope"


@pytest.mark.anyio
async def test_sse_with_token(auth_server: None, server_url: str) -> None:
    headers = {"Authorization": f"Bearer {GOOD_TOKEN}"}
    async with sse_client(f"{server_url}/sse", headers=headers) as streams:
        async with ClientSession(*streams) as session:
            with anyio.fail_after(5):
                await session.initialize()
                result = await session.call_tool("echo", {"text": "authorized"})

    assert result.content == [types.TextContent(text="authorized")]
