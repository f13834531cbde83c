"""The correction round: repair each invalid tool call with a JSONPatch."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import List, Optional, Sequence

import langsmith as ls
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AnyMessage, ToolCall
from langchain_core.runnables import RunnableConfig, RunnableLambda
from langchain_core.runnables.config import get_executor_for_config

from patchcall.edits import apply_patches, ensure_patches
from patchcall.schema import (
    PATCH_DOC,
    PATCH_FUNCTION_ERRORS,
    PATCH_FUNCTION_NAME,
    PatchFunctionErrors,
    _create_patch_function_name_schema,
)
from patchcall.states import (
    ExtendedExtractState,
    ExtractionState,
    latest_model_message,
    message_kind,
)
from patchcall.types import ToolCallOp
from patchcall.utils import _get_history_for_tool_call

logger = logging.getLogger("extraction")


def _failed_tool_call_ids(messages: Sequence[AnyMessage]) -> List[str]:
    """Ids of calls that failed validation in the current round, newest first.

    Only tool results after the latest model message belong to this round;
    anything earlier was already handled by a previous round.
    """
    failed: List[str] = []
    for m in reversed(messages):
        kind = message_kind(m)
        if kind == "ai":
            break
        if kind == "tool" and m.status == "error":  # type: ignore[attr-defined]
            failed.append(m.tool_call_id)  # type: ignore[attr-defined]
    return failed


def _plan_patch_tasks(state: ExtractionState) -> List[ExtendedExtractState]:
    """One correction task per failed call in the current round.

    The first task found carries the round's single attempt increment, so
    N concurrent corrections consume one attempt between them.
    """
    return [
        ExtendedExtractState(
            messages=_get_history_for_tool_call(
                state.messages, tool_call_id, state.origin_id
            ),
            attempts=state.attempts,
            msg_id=state.msg_id,
            origin_id=state.origin_id,
            existing=state.existing,
            tool_call_id=tool_call_id,
            bump_attempt=i == 0,
        )
        for i, tool_call_id in enumerate(_failed_tool_call_ids(state.messages))
    ]


class _Patch:
    """Prompt an LLM to patch invalid tool calls after they fail validation.

    We have found this to be more reliable and more token-efficient than
    re-creating the entire tool call from scratch. Each failing call gets
    its own correction task; the tasks run concurrently and are joined into
    a single new model message before the next validation.
    """

    def __init__(self, llm: BaseChatModel, valid_tool_names: Optional[List[str]] = None):
        self.bound = llm.bind_tools(
            [
                PatchFunctionErrors,
                _create_patch_function_name_schema(
                    tuple(valid_tool_names) if valid_tool_names else None
                ),
            ],
            tool_choice="any",
        )

    def _fix_one(self, task: ExtendedExtractState, config: RunnableConfig) -> List[ToolCallOp]:
        try:
            msg = self.bound.invoke(task.messages, config)
        except Exception as e:
            logger.error(f"Could not generate a patch for {task.tool_call_id}: {repr(e)}")
            return []
        return _infer_tool_call_ops(task.messages, msg.tool_calls, task.tool_call_id)  # type: ignore[attr-defined]

    async def _afix_one(
        self, task: ExtendedExtractState, config: RunnableConfig
    ) -> List[ToolCallOp]:
        try:
            msg = await self.bound.ainvoke(task.messages, config)
        except Exception as e:
            logger.error(f"Could not generate a patch for {task.tool_call_id}: {repr(e)}")
            return []
        return _infer_tool_call_ops(task.messages, msg.tool_calls, task.tool_call_id)  # type: ignore[attr-defined]

    @ls.traceable(tags=["patch", "langsmith:hidden"])
    def _tear_down(
        self,
        state: ExtractionState,
        tasks: Sequence[ExtendedExtractState],
        results: Sequence[List[ToolCallOp]],
    ) -> dict:
        latest = latest_model_message(state.messages)
        if latest is None:
            return {}
        ops = [op for task_ops in results for op in task_ops]
        msg = AIMessage(
            content=latest.content,
            tool_calls=_apply_tool_call_ops(latest.tool_calls, ops),
            additional_kwargs={
                "updated_docs": dict(latest.additional_kwargs.get("updated_docs") or {})
            },
            id=str(uuid.uuid4()),
        )
        return {
            "messages": [msg],
            "attempts": state.attempts + sum(1 for t in tasks if t.bump_attempt),
            "msg_id": msg.id,
        }

    def invoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        tasks = _plan_patch_tasks(state)
        with get_executor_for_config(config) as executor:
            futures = [executor.submit(self._fix_one, task, config) for task in tasks]
            results = [f.result() for f in futures]
        return self._tear_down(state, tasks, results)

    async def ainvoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        tasks = _plan_patch_tasks(state)
        results = await asyncio.gather(*(self._afix_one(task, config) for task in tasks))
        return self._tear_down(state, tasks, results)

    def as_runnable(self):
        return RunnableLambda(self.invoke, self.ainvoke, name="patch")


def _find_tool_call(messages: Sequence[AnyMessage], target_id: str) -> Optional[ToolCall]:
    for m in reversed(messages):
        if message_kind(m) == "ai":
            for tc in m.tool_calls:  # type: ignore[attr-defined]
                if tc["id"] == target_id:
                    return tc
    return None


@ls.traceable(tags=["langsmith:hidden"])
def _infer_tool_call_ops(
    messages: Sequence[AnyMessage], tool_calls: List[ToolCall], target_id: str
) -> List[ToolCallOp]:
    """Translate a patch model's tool calls into corrections for ``target_id``."""
    original = _find_tool_call(messages, target_id)
    if original is None:
        logger.error(f"Could not find tool call {target_id} to patch")
        return []
    ops: List[ToolCallOp] = []
    for tool_call in tool_calls:
        name, args = tool_call["name"], tool_call["args"]
        if name == PATCH_FUNCTION_NAME:
            if args.get("fixed_name"):
                ops.append(
                    {
                        "op": "update_tool_name",
                        "target": {"id": target_id, "name": str(args["fixed_name"])},
                    }
                )
        elif name in (PATCH_FUNCTION_ERRORS, PATCH_DOC):
            patches = ensure_patches(args)
            if not patches:
                continue
            try:
                patched_args = apply_patches(original["args"], patches)
            except Exception as e:
                logger.error(f"Could not apply patch: {repr(e)}")
                continue
            ops.append(
                {
                    "op": "update_tool_call",
                    "target": {"id": target_id, "name": original["name"], "args": patched_args},
                }
            )
        else:
            logger.error(f"Unrecognized function call {name}")
    return ops


def _apply_tool_call_ops(
    tool_calls: Sequence[ToolCall], ops: Sequence[ToolCallOp]
) -> List[ToolCall]:
    """Return ``tool_calls`` with each correction applied, leaving the input intact."""
    result = [ToolCall(id=tc["id"], name=tc["name"], args=tc["args"]) for tc in tool_calls]
    for op in ops:
        target = op["target"]
        for i, tc in enumerate(result):
            if tc["id"] != target["id"]:
                continue
            if op["op"] == "update_tool_call":
                result[i] = ToolCall(id=tc["id"], name=tc["name"], args=target["args"])
            elif op["op"] == "update_tool_name":
                result[i] = ToolCall(id=tc["id"], name=target["name"], args=tc["args"])
            else:
                raise ValueError(f"Invalid operation: {op['op']}")
    return result
