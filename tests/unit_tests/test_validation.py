from typing import List

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolCall
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from patchcall._base import ExtractionState, SchemaInstance, _Validator


class Person(BaseModel):
    """A person."""

    name: str
    age: int = Field(ge=0)


class Pet(BaseModel):
    """A pet."""

    species: str
    nicknames: List[str] = Field(default_factory=list)


class Strict(BaseModel):
    value: str

    @field_validator("value")
    @classmethod
    def needs_retry(cls, v: str, info: ValidationInfo) -> str:
        if (info.context or {}).get("attempt_count", 0) < 2:
            raise ValueError("not yet")
        return v


SCHEMAS = {"Person": Person, "Pet": Pet}


def _call(name: str, args: dict, call_id: str) -> ToolCall:
    return ToolCall(id=call_id, name=name, args=args)


def test_valid_calls_carry_models():
    validator = _Validator(SCHEMAS)
    results = validator.validate(
        [
            _call("Person", {"name": "Ann", "age": 3}, "c1"),
            _call("Pet", {"species": "cat"}, "c2"),
        ]
    )
    assert [r.tool_call_id for r in results] == ["c1", "c2"]
    assert all(r.status == "success" for r in results)
    assert results[0].artifact == Person(name="Ann", age=3)
    assert results[1].artifact == Pet(species="cat", nicknames=[])


def test_schema_violation():
    validator = _Validator(SCHEMAS)
    (result,) = validator.validate([_call("Person", {"name": "Ann", "age": -5}, "c1")])
    assert result.status == "error"
    assert "greater than or equal to 0" in result.content
    assert "PatchFunctionErrors" in result.content
    assert "json_doc_id=[c1]" in result.content


def test_custom_error_format():
    validator = _Validator(
        SCHEMAS, format_error=lambda e, call, schema: f"{schema.__name__}:{call['id']}"
    )
    (result,) = validator.validate([_call("Person", {"name": "Ann"}, "c9")])
    assert result.status == "error"
    assert result.content == "Person:c9"


def test_unrecognized_tool_name():
    validator = _Validator(SCHEMAS)
    (result,) = validator.validate([_call("Persn", {"name": "Ann", "age": 1}, "c1")])
    assert result.status == "error"
    assert 'Unrecognized tool name: "Persn"' in result.content
    assert "Person, Pet" in result.content
    assert "PatchFunctionName" in result.content


def test_attempt_count_is_passed_as_context():
    validator = _Validator({"Strict": Strict})
    call = _call("Strict", {"value": "x"}, "c1")
    assert validator.validate([call], attempts=1)[0].status == "error"
    assert validator.validate([call], attempts=2)[0].status == "success"


def test_remove_doc_only_when_deletes_enabled():
    existing = [SchemaInstance("r1", "Person", {"name": "Ann", "age": 3})]
    call = _call("RemoveDoc", {"json_doc_id": "r1"}, "c1")
    bad = _call("RemoveDoc", {"json_doc_id": "nope"}, "c2")

    enabled = _Validator(SCHEMAS, enable_deletes=True)
    ok, err = enabled.validate([call, bad], existing=existing)
    assert ok.status == "success"
    assert ok.artifact.json_doc_id == "r1"
    assert err.status == "error"
    assert "not found" in err.content

    disabled = _Validator(SCHEMAS)
    (result,) = disabled.validate([call], existing=existing)
    assert result.status == "error"
    assert "Unrecognized tool name" in result.content


def test_untyped_records_pass_through():
    existing = [SchemaInstance("r1", "Note", {"text": "hi"})]
    validator = _Validator(SCHEMAS, existing_schema_policy=False)
    (result,) = validator.validate(
        [_call("Note", {"text": "hello"}, "c1")], existing=existing
    )
    assert result.status == "success"
    assert result.artifact is None


async def test_avalidate_matches_validate():
    validator = _Validator(SCHEMAS)
    calls = [
        _call("Person", {"name": "Ann", "age": 3}, "c1"),
        _call("Person", {"name": "Bob", "age": "old"}, "c2"),
        _call("Pet", {"species": "dog", "nicknames": ["rex"]}, "c3"),
    ]
    results = await validator.avalidate(calls)
    assert [r.tool_call_id for r in results] == ["c1", "c2", "c3"]
    assert [r.status for r in results] == ["success", "error", "success"]


@pytest.mark.parametrize("use_async", [False, True])
async def test_node_validates_latest_model_message(use_async: bool):
    state = ExtractionState(
        messages=[
            HumanMessage(content="hi", id="h1"),
            AIMessage(
                content="",
                id="a1",
                tool_calls=[_call("Person", {"name": "Old", "age": -1}, "old")],
            ),
            AIMessage(
                content="",
                id="a2",
                tool_calls=[_call("Person", {"name": "New", "age": 1}, "new")],
            ),
        ]
    )
    validator = _Validator(SCHEMAS)
    config = {"configurable": {}}
    if use_async:
        update = await validator.ainvoke(state, config)
    else:
        update = validator.invoke(state, config)
    (result,) = update["messages"]
    assert result.tool_call_id == "new"
    assert result.status == "success"


def test_node_without_model_message():
    validator = _Validator(SCHEMAS)
    state = ExtractionState(messages=[HumanMessage(content="hi", id="h1")])
    assert validator.invoke(state, {"configurable": {}}) == {"messages": []}
