"""Turn the tool-likes a caller passes in into named pydantic models."""

from __future__ import annotations

import inspect
from typing import (
    Any,
    Callable,
    Dict,
    Sequence,
    Type,
    Union,
    cast,
)

from dydantic import create_model_from_schema
from langchain_core.tools import BaseTool, create_schema_from_function
from pydantic import BaseModel, Field, create_model
from typing_extensions import Annotated, get_args, get_origin, is_typeddict

TOOL_T = Union[BaseTool, Type[BaseModel], Callable, Dict[str, Any]]
"""Type for tools that can be used with the extractor.

Can be one of:
- BaseTool: A LangChain tool
- Type[BaseModel]: A Pydantic model class
- Callable: A function (its arguments become the schema)
- type: A TypedDict
- Dict[str, Any]: A JSON schema, a {name, description, parameters} function
  spec, or an OpenAI-format tool
"""


def ensure_tools(tools: Sequence[TOOL_T]) -> Dict[str, Type[BaseModel]]:
    """Map each tool's name to the pydantic model its arguments must satisfy.

    Raises:
        ValueError: If a tool is in an unsupported format or two tools share
            a name.
    """
    schemas: Dict[str, Type[BaseModel]] = {}
    for t in tools:
        name, model = _to_model(t)
        if name in schemas:
            raise ValueError(f"Duplicate tool name: {name}")
        schemas[name] = model
    return schemas


def _to_model(t: Any) -> tuple[str, Type[BaseModel]]:
    if isinstance(t, dict):
        if "function" in t and t.get("type") == "function":
            return _to_model(t["function"])
        if all(k in t for k in ("name", "parameters")):
            model = create_model_from_schema({"title": t["name"], **t["parameters"]})
            model.__doc__ = t.get("description") or model.__doc__
            return t["name"], model
        model = create_model_from_schema(t)
        if not model.__doc__:
            model.__doc__ = t.get("description") or model.__name__
        return model.__name__, model
    if isinstance(t, BaseTool):
        if t.args_schema is None or not (
            isinstance(t.args_schema, type) and issubclass(t.args_schema, BaseModel)
        ):
            raise ValueError(f"Tool {t.name} has no pydantic args_schema to validate against.")
        return t.name, t.args_schema
    if is_typeddict(t):
        return t.__name__, _typed_dict_to_model(cast(type, t))
    if isinstance(t, type) and issubclass(t, BaseModel):
        return t.__name__, t
    if callable(t):
        model = create_schema_from_function(t.__name__, t, include_injected=False)
        model.__doc__ = inspect.getdoc(t) or model.__doc__
        return t.__name__, model
    raise ValueError(f"Invalid tool type: {type(t)}")


def _typed_dict_to_model(typed_dict: type) -> Type[BaseModel]:
    """Build a pydantic model with one field per TypedDict key.

    Nested TypedDicts are left as field types; pydantic validates them
    natively. ``Annotated[T, default, description]`` is honoured the way
    LangChain reads TypedDict tools.
    """
    required = getattr(typed_dict, "__required_keys__", frozenset(typed_dict.__annotations__))
    fields: Dict[str, Any] = {}
    for name, annotation in typed_dict.__annotations__.items():
        kwargs: Dict[str, Any] = {"default": ... if name in required else None}
        if get_origin(annotation) is Annotated:
            annotation, *extras = get_args(annotation)
            kwargs.update(zip(("default", "description"), extras))
            if not isinstance(kwargs.get("description", ""), str):
                raise ValueError(
                    f"Invalid annotation for field {name}. Third argument to"
                    " Annotated must be a string description."
                )
        fields[name] = (annotation, Field(**kwargs))
    model = create_model(typed_dict.__name__, **fields)  # type: ignore[call-overload]
    model.__doc__ = inspect.getdoc(typed_dict) or ""
    return model
