"""Schemas for the internal tools the extractor binds while patching.

The models here are never returned to callers. They describe the PatchDoc,
PatchFunctionErrors, PatchFunctionName and RemoveDoc tools to the LLM.
"""

from __future__ import annotations

import functools
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Sequence,
    Type,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    field_validator,
)

from patchcall.existing import list_existing_ids
from patchcall.utils import _exclude_none


PATCH_DOC = "PatchDoc"
PATCH_FUNCTION_ERRORS = "PatchFunctionErrors"
PATCH_FUNCTION_NAME = "PatchFunctionName"
REMOVE_DOC = "RemoveDoc"
INTERNAL_TOOL_NAMES = frozenset(
    {PATCH_DOC, PATCH_FUNCTION_ERRORS, PATCH_FUNCTION_NAME, REMOVE_DOC}
)


def get_schema(model: Type[BaseModel]) -> dict:
    """JSON Schema for a model, without null-valued keywords."""
    return _exclude_none(model.model_json_schema())


# Some providers (Fireworks among them) reject untyped arrays and objects,
# so the patch value is spelled out instead of Any.
_JSON_PRIM_TYPES = Union[str, StrictInt, StrictBool, StrictFloat, None]
_JSON_TYPES = Union[
    _JSON_PRIM_TYPES, List[_JSON_PRIM_TYPES], Dict[str, _JSON_PRIM_TYPES]
]


class JsonPatch(BaseModel):
    """A JSON Patch document represents an operation to be performed on a JSON document.

    Note that the op and path are ALWAYS required. Value is required for add, replace
    and test. From is required for move and copy.
    """  # noqa

    op: Literal["add", "remove", "replace", "move", "copy", "test"] = Field(
        ...,
        description="The operation to be performed.",
    )
    path: str = Field(
        ...,
        description="A JSON Pointer path that references a location within the"
        " target document where the operation is performed."
        " Note: patches are applied sequentially. If you remove a value, the collection"
        " size changes before the next patch is applied.",
    )
    value: Union[_JSON_TYPES, List[_JSON_TYPES], Dict[str, _JSON_TYPES]] = Field(
        default=None,
        description="The value to be used within the operation.",
    )
    from_: Optional[str] = Field(
        default=None,
        alias="from",
        description="For move and copy: the JSON Pointer to read the value from.",
    )
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "op": "replace",
                    "path": "/path/to/my_array/1",
                    "value": "the newer value to be patched",
                },
                {
                    "op": "add",
                    "path": "/path/to/my_array/-",
                    "value": "appended",
                },
                {"op": "remove", "path": "/path/to/my_array/1"},
                {"op": "move", "from": "/old_key", "path": "/new_key"},
            ]
        },
    )


_PATCHES_DESCRIPTION = (
    "A list of JSONPatch operations to be applied to the"
    " previous tool call's response arguments. If none are required, return"
    " an empty list. This field is REQUIRED."
    " Multiple patches in the list are applied sequentially in the order provided,"
    " with each patch building upon the result of the previous one."
)


class PatchFunctionErrors(BaseModel):
    """Respond with all JSONPatch operations required to update the previous invalid function call."""  # noqa

    json_doc_id: str = Field(
        ...,
        description="The ID of the function you are patching.",
    )
    planned_edits: str = Field(
        ...,
        description="Write a bullet-point list of each ValidationError you encountered"
        " and the corresponding JSONPatch operation needed to heal it."
        " For each operation, write why your initial guess was incorrect,"
        " citing the corresponding types(s) from the JSONSchema"
        " that will be used the validate the resultant patched document."
        " Think step-by-step to ensure no error is overlooked.",
    )
    patches: List[JsonPatch] = Field(..., description=_PATCHES_DESCRIPTION)


class PatchDoc(BaseModel):
    """Respond with JSONPatch operations to update the existing JSON document based on the provided text and schema."""  # noqa

    json_doc_id: str = Field(
        ...,
        description="The json_doc_id of the document you are patching.",
    )
    planned_edits: str = Field(
        ...,
        description="Think step-by-step, reasoning over each required"
        " update and the corresponding JSONPatch operation to accomplish it."
        " Cite the fields in the JSONSchema you referenced in developing this plan."
        " Address each path as a group; don't switch between paths.\n"
        " Plan your patches in the following order:"
        "1. replace - this keeps collection size the same.\n"
        "2. remove - BE CAREFUL ABOUT ORDER OF OPERATIONS."
        " Each operation is applied sequentially."
        " For arrays, remove the highest indexed value first to avoid shifting"
        " indices. This ensures subsequent remove operations remain valid.\n"
        " 3. add (for arrays, use /- to efficiently append to end).",
    )
    patches: List[JsonPatch] = Field(
        ...,
        description=_PATCHES_DESCRIPTION
        + " Take care to respect array bounds.",
    )


@functools.lru_cache(maxsize=10)
def _create_patch_function_name_schema(
    valid_tool_names: Optional[tuple[str, ...]] = None,
) -> Type[BaseModel]:
    vname = f" Must be one of {', '.join(valid_tool_names)}" if valid_tool_names else ""

    class PatchFunctionName(BaseModel):
        """Call this if the tool message indicates that you previously invoked an invalid tool, (e.g., "Unrecognized tool name" error), do so here."""  # noqa

        json_doc_id: str = Field(
            ...,
            description="The ID of the function you are patching.",
        )
        reasoning: list[str] = Field(
            ...,
            description="At least 2 logical reasons why this action ought to be taken."
            "Cite the specific error(s) mentioned to motivate the fix.",
        )
        fixed_name: Optional[str] = Field(
            ...,
            description="If you need to change the name of the function (e.g., "
            f'from an "Unrecognized tool name" error), do so here.{vname}',
        )

    return PatchFunctionName


def _create_remove_doc_from_existing(existing: Any) -> Type[BaseModel]:
    return _create_remove_doc_schema(tuple(sorted(list_existing_ids(existing))))


@functools.lru_cache(maxsize=10)
def _create_remove_doc_schema(allowed_ids: tuple[str, ...]) -> Type[BaseModel]:
    """Create a RemoveDoc schema that only accepts known document ids."""

    class RemoveDoc(BaseModel):
        """Use this tool to remove (delete) a doc by its ID."""

        json_doc_id: str = Field(
            ...,
            description=f"ID of the document to remove. Must be one of: {allowed_ids}",
        )

        @field_validator("json_doc_id")
        @classmethod
        def validate_doc_id(cls, v: str) -> str:
            if v not in allowed_ids:
                raise ValueError(
                    f"Document ID '{v}' not found. Available IDs: {sorted(allowed_ids)}"
                )
            return v

    return RemoveDoc


def as_tool_spec(name: str, model: Type[BaseModel]) -> Dict[str, Any]:
    """Describe ``model`` as an OpenAI-format function tool called ``name``."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": model.__doc__ or "",
            "parameters": get_schema(model),
        },
    }


def as_tool_specs(schemas: Dict[str, Type[BaseModel]]) -> Sequence[Dict[str, Any]]:
    return [as_tool_spec(name, model) for name, model in schemas.items()]
