"""Utility functions for the patchcall package."""

from __future__ import annotations

from typing import (
    Any,
    Dict,
    List,
)

from langchain_core.messages import AIMessage, AnyMessage

from patchcall.states import message_kind


def _exclude_none(d: Dict[str, Any]) -> Dict[str, Any]:
    """Remove None values from a dictionary recursively."""
    return {
        k: v if not isinstance(v, dict) else _exclude_none(v)
        for k, v in d.items()
        if v is not None
    }


def _get_history_for_tool_call(
    messages: List[AnyMessage], tool_call_id: str, origin_id: str
) -> List[AnyMessage]:
    """Build the transcript a correction task sees for one tool call.

    Everything before the first model message of this extraction is kept.
    Earlier rounds are skipped. What follows is the latest model message
    reduced to the target call, then that call's validation results.
    """
    start = next(
        (i for i, m in enumerate(messages) if origin_id and m.id == origin_id),
        None,
    )
    latest = next(
        i for i in range(len(messages) - 1, -1, -1) if message_kind(messages[i]) == "ai"
    )
    ai = messages[latest]
    history = list(messages[: latest if start is None else start])
    history.append(
        AIMessage(
            # Frequently have partial_json blocks that are
            # invalid if sent back to the API
            content=str(ai.content),
            id=ai.id,
            tool_calls=[tc for tc in ai.tool_calls if tc["id"] == tool_call_id],  # type: ignore[attr-defined]
        )
    )
    history.extend(
        m
        for m in messages[latest + 1 :]
        if message_kind(m) == "tool" and m.tool_call_id == tool_call_id  # type: ignore[attr-defined]
    )
    return history
