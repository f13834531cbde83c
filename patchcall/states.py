"""State carried through one extraction call."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional, Sequence, get_args

from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)
from langgraph.graph.message import add_messages
from typing_extensions import Annotated

MessageKind = Literal["system", "human", "ai", "tool"]
_KINDS = frozenset(get_args(MessageKind))


def message_kind(message: AnyMessage) -> MessageKind:
    """The closed set of message kinds the state machine branches on."""
    kind = message.type
    if kind not in _KINDS:
        raise TypeError(f"Unsupported message type in extraction history: {kind!r}")
    return kind  # type: ignore[return-value]


def as_known_kind(message: BaseMessage) -> AnyMessage:
    """Map a message outside the closed set onto it.

    Chat messages keep their system or assistant role. Everything else
    (other roles, function results) becomes a human message with the same
    content.
    """
    if message.type in _KINDS:
        return message  # type: ignore[return-value]
    role = getattr(message, "role", None)
    if role == "system":
        return SystemMessage(content=message.content, id=message.id, name=message.name)
    if role in ("assistant", "ai"):
        return AIMessage(content=message.content, id=message.id, name=message.name)
    return HumanMessage(content=message.content, id=message.id, name=message.name)


def latest_model_message(messages: Sequence[AnyMessage]) -> Optional[AIMessage]:
    for m in reversed(messages):
        if message_kind(m) == "ai":
            return m  # type: ignore[return-value]
    return None


@dataclass(kw_only=True)
class ExtractionState:
    messages: Annotated[List[AnyMessage], add_messages] = field(default_factory=list)
    """Append-only history. Nodes only ever add messages to it."""
    attempts: int = field(default=0)
    """Rounds consumed so far. Nodes write the new total."""
    msg_id: str = field(default="")
    """ID of the most recent model-authored message."""
    origin_id: str = field(default="")
    """ID of the first model-authored message of this call."""
    existing: Optional[Any] = field(default=None)
    """Existing records to update, if any. Never changed during the call."""


@dataclass(kw_only=True)
class ExtendedExtractState(ExtractionState):
    """State for a single correction task within a patch round."""

    tool_call_id: str = field(default="")
    """The ID of the tool call to be patched."""
    bump_attempt: bool = field(default=False)
    """Whether this task carries the round's attempt increment."""
