"""Validation of proposed tool calls against their schemas."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Type, cast

from langchain_core.messages import ToolCall, ToolMessage
from langchain_core.runnables import RunnableConfig, RunnableLambda
from langchain_core.runnables.config import get_executor_for_config, run_in_executor
from pydantic import BaseModel

from patchcall.existing import ExistingSchemaPolicy, untyped_schema_names
from patchcall.schema import (
    PATCH_FUNCTION_ERRORS,
    PATCH_FUNCTION_NAME,
    REMOVE_DOC,
    _create_remove_doc_from_existing,
)
from patchcall.states import ExtractionState, latest_model_message


ErrorFormatter = Callable[[BaseException, ToolCall, Type[BaseModel]], str]


def _default_format_error(
    error: BaseException, call: ToolCall, schema: Type[BaseModel]
) -> str:
    return (
        f"{repr(error)}\n\nRespond after fixing all validation errors."
        f" Use {PATCH_FUNCTION_ERRORS} to fix json_doc_id=[{call['id']}]."
    )


class _Validator:
    """Check every tool call of a round against its schema.

    Calls are independent and are checked concurrently. Each produces a
    ToolMessage: on success it carries the validated model as its artifact,
    on failure an error description the patch round can act on.
    """

    def __init__(
        self,
        schemas_by_name: Dict[str, Type[BaseModel]],
        *,
        format_error: Optional[ErrorFormatter] = None,
        enable_deletes: bool = False,
        existing_schema_policy: ExistingSchemaPolicy = None,
    ):
        self.schemas_by_name = dict(schemas_by_name)
        self.format_error = format_error or _default_format_error
        self.enable_deletes = enable_deletes
        self.existing_schema_policy = existing_schema_policy

    def _runner(self, existing: Any, attempts: int) -> Callable[[ToolCall], ToolMessage]:
        removal_schema = (
            _create_remove_doc_from_existing(existing)
            if self.enable_deletes and existing
            else None
        )
        untyped = untyped_schema_names(
            existing, self.schemas_by_name, self.existing_schema_policy
        )
        context = {"attempt_count": attempts}

        def run_one(call: ToolCall) -> ToolMessage:
            name = call["name"]
            call_id = cast(str, call["id"])
            if removal_schema is not None and name == REMOVE_DOC:
                schema: Optional[Type[BaseModel]] = removal_schema
            else:
                schema = self.schemas_by_name.get(name)
            if schema is None:
                if name in untyped:
                    return ToolMessage(
                        content=json.dumps(call["args"]),
                        name=name,
                        tool_call_id=call_id,
                    )
                valid_names = ", ".join(self.schemas_by_name)
                return ToolMessage(
                    content=f'Unrecognized tool name: "{name}". You only have'
                    f" access to the following tools: {valid_names}."
                    f" Please call {PATCH_FUNCTION_NAME} with the *correct* tool name"
                    f" to fix json_doc_id=[{call_id}].",
                    name=name,
                    tool_call_id=call_id,
                    status="error",
                )
            try:
                output = schema.model_validate(call["args"], context=context)
            except Exception as e:
                return ToolMessage(
                    content=self.format_error(e, call, schema),
                    name=name,
                    tool_call_id=call_id,
                    status="error",
                )
            return ToolMessage(
                content=output.model_dump_json(),
                name=name,
                tool_call_id=call_id,
                artifact=output,
            )

        return run_one

    def validate(
        self,
        calls: Sequence[ToolCall],
        *,
        existing: Any = None,
        attempts: int = 0,
        config: Optional[RunnableConfig] = None,
    ) -> List[ToolMessage]:
        run_one = self._runner(existing, attempts)
        with get_executor_for_config(config) as executor:
            return [*executor.map(run_one, calls)]

    async def avalidate(
        self,
        calls: Sequence[ToolCall],
        *,
        existing: Any = None,
        attempts: int = 0,
        config: Optional[RunnableConfig] = None,
    ) -> List[ToolMessage]:
        run_one = self._runner(existing, attempts)
        return list(
            await asyncio.gather(
                *(run_in_executor(config, run_one, call) for call in calls)
            )
        )

    def invoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        """Validate the tool calls of the most recent model message."""
        msg = latest_model_message(state.messages)
        if msg is None:
            return {"messages": []}
        results = self.validate(
            msg.tool_calls, existing=state.existing, attempts=state.attempts, config=config
        )
        return {"messages": results}

    async def ainvoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        msg = latest_model_message(state.messages)
        if msg is None:
            return {"messages": []}
        results = await self.avalidate(
            msg.tool_calls, existing=state.existing, attempts=state.attempts, config=config
        )
        return {"messages": results}

    def as_runnable(self):
        return RunnableLambda(self.invoke, self.ainvoke, name="validate")
