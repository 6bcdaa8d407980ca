from typing import Annotated

import pydantic
import pytest
from pydantic import BaseModel, Field

from mcplink.utilities.func_metadata import InvalidSignature, func_metadata, is_async_callable


class Filter(BaseModel):
    column: str
    value: int


def search(table: str, filters: list[Filter], limit: Annotated[int, Field(ge=1)] = 10, untyped=None):
    return table


def test_schema_from_signature():
    schema = func_metadata(search).arg_model.model_json_schema()

    assert schema["required"] == ["table", "filters"]
    assert schema["properties"]["table"] == {"title": "Table", "type": "string"}
    assert schema["properties"]["limit"]["minimum"] == 1
    assert schema["properties"]["untyped"]["type"] == "string"


def test_validate_arguments():
    meta = func_metadata(search)

    kwargs = meta.validate_arguments({"table": "orders", "filters": [{"column": "id", "value": 3}]})

    assert kwargs["table"] == "orders"
    assert kwargs["filters"] == [Filter(column="id", value=3)]
    assert kwargs["limit"] == 10


def test_json_strings_are_pre_parsed():
    meta = func_metadata(search)

    kwargs = meta.validate_arguments({"table": "42", "filters": '[{"column": "id", "value": 3}]'})

    # scalars stay strings
    assert kwargs["table"] == "42"
    assert kwargs["filters"] == [Filter(column="id", value=3)]


def test_invalid_arguments():
    meta = func_metadata(search)

    with pytest.raises(pydantic.ValidationError):
        meta.validate_arguments({"table": "orders", "filters": [], "limit": 0})


def test_skip_names():
    def tool(query: str, ctx: object) -> str:
        return query

    assert list(func_metadata(tool, skip_names=["ctx"]).arg_model.model_fields) == ["query"]


@pytest.mark.parametrize(
    "source",
    [
        "def fn(*args): pass",
        "def fn(**kwargs): pass",
        "def fn(_private: int): pass",
    ],
)
def test_invalid_signatures(source: str):
    namespace: dict[str, object] = {}
    exec(source, namespace)

    with pytest.raises(InvalidSignature):
        func_metadata(namespace["fn"])  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_call_fn():
    async def add(a: int, b: int) -> int:
        return a + b

    meta = func_metadata(add)
    kwargs = meta.validate_arguments({"a": 1, "b": "2"})

    assert await meta.call_fn(add, is_async_callable(add), kwargs) == 3
