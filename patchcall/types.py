"""Type definitions for the patchcall package."""

from __future__ import annotations

from typing import (
    Any,
    Dict,
    List,
    Literal,
    NamedTuple,
    Optional,
    Sequence,
    Union,
)

from langchain_core.messages import (
    AnyMessage,
    MessageLikeRepresentation,
)
from langchain_core.prompt_values import PromptValue
from typing_extensions import TypedDict


class SchemaInstance(NamedTuple):
    """An existing record that the extractor may patch or remove.

    Attributes:
        record_id (str): Identifier the model uses to address the record
            (the ``json_doc_id`` of a PatchDoc or RemoveDoc call).
        schema_name (str): Name of the schema the record conforms to, or
            ``"__any__"`` for an untyped document.
        record (dict[str, Any]): The document itself.
    """

    record_id: str
    schema_name: str
    record: Dict[str, Any]


ExistingType = Union[
    Dict[str, Any], List[SchemaInstance], List[tuple[str, str, dict[str, Any]]]
]
"""Existing records to update.

Either a mapping of schema name to record (one instance per schema) or a
list of ``(record_id, schema_name, record)`` triples (any number of
instances per schema).
"""


class ExtractionInputs(TypedDict, total=False):
    messages: Union[
        Union[MessageLikeRepresentation, Sequence[MessageLikeRepresentation]],
        PromptValue,
    ]
    existing: Optional[ExistingType]
    """Records to update instead of extracting from scratch."""


InputsLike = Union[ExtractionInputs, List[AnyMessage], PromptValue, str]


class ExtractionOutputs(TypedDict):
    messages: List[Any]  # AIMessage
    responses: List[Any]  # BaseModel
    response_metadata: List[dict[str, Any]]
    attempts: int


class ToolCallOp(TypedDict):
    """A correction to one tool call, produced by a patch task."""

    op: Literal["update_tool_call", "update_tool_name"]
    target: Dict[str, Any]
