"""Extraction-related functionality for the patchcall package."""

from __future__ import annotations

import json
import logging
import uuid
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Sequence,
    Tuple,
    Type,
    Union,
    cast,
)

import langsmith as ls
from jsonpatch import JsonPatchException  # type: ignore[import-untyped]
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolCall,
)
from langchain_core.prompt_values import PromptValue
from langchain_core.runnables import Runnable, RunnableConfig, RunnableLambda
from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel

from patchcall.edits import apply_patches, ensure_patches
from patchcall.existing import (
    ExistingSchemaPolicy,
    coerce_existing,
    resolve_existing,
)
from patchcall.patch import _failed_tool_call_ids, _Patch
from patchcall.schema import (
    INTERNAL_TOOL_NAMES,
    PATCH_DOC,
    PATCH_FUNCTION_ERRORS,
    REMOVE_DOC,
    PatchDoc,
    _create_remove_doc_from_existing,
    as_tool_specs,
    get_schema,
)
from patchcall.states import ExtractionState, as_known_kind, message_kind
from patchcall.tools import TOOL_T, ensure_tools
from patchcall.types import ExtractionOutputs, InputsLike
from patchcall.validation import ErrorFormatter, _Validator

logger = logging.getLogger("extraction")

DEFAULT_MAX_ATTEMPTS = 3


def _ensure_ids(msg: AIMessage) -> AIMessage:
    if not msg.id:
        msg.id = str(uuid.uuid4())
    for tc in msg.tool_calls:
        if not tc.get("id"):
            tc["id"] = str(uuid.uuid4())
    return msg


def _record_error(run_tree: Any, message: str) -> None:
    logger.error(message)
    if run_tree is not None:
        run_tree.error = message


class _Extract:
    def __init__(
        self,
        llm: BaseChatModel,
        schemas: Dict[str, Type[BaseModel]],
        tool_choice: Optional[str] = None,
    ):
        self.bound_llm = llm.bind_tools(as_tool_specs(schemas), tool_choice=tool_choice)

    @ls.traceable(tags=["langsmith:hidden"])
    def _tear_down(self, msg: AIMessage, state: ExtractionState) -> dict:
        msg = _ensure_ids(msg)
        return {
            "messages": [msg],
            "attempts": state.attempts + 1,
            "msg_id": msg.id,
            "origin_id": state.origin_id or msg.id,
        }

    async def ainvoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        """Extract entities from the input messages."""
        msg = await self.bound_llm.ainvoke(state.messages, config)
        return self._tear_down(cast(AIMessage, msg), state)

    def invoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        """Extract entities from the input messages."""
        msg = self.bound_llm.invoke(state.messages, config)
        return self._tear_down(cast(AIMessage, msg), state)

    def as_runnable(self):
        return RunnableLambda(self.invoke, self.ainvoke, name="extract")


class _ExtractUpdates:
    """Prompt an LLM to patch existing records.

    We have found this to be preferable to re-generating
    the entire tool call from scratch in several ways:

    1. Fewer output tokens.
    2. Less likely to introduce new errors or drop important information.
    3. Easier for the LLM to generate.
    """

    def __init__(
        self,
        llm: BaseChatModel,
        schemas: Dict[str, Type[BaseModel]],
        *,
        enable_inserts: bool = False,
        enable_updates: bool = True,
        enable_deletes: bool = False,
        existing_schema_policy: ExistingSchemaPolicy = None,
    ):
        if not any((enable_inserts, enable_updates, enable_deletes)):
            raise ValueError(
                "At least one of enable_inserts, enable_updates,"
                " or enable_deletes must be True."
            )
        self.llm = llm
        self.schemas = dict(schemas)
        self.enable_inserts = enable_inserts
        self.enable_updates = enable_updates
        self.enable_deletes = enable_deletes
        self.existing_schema_policy = existing_schema_policy
        tools: List[Any] = [PatchDoc] if enable_updates else []
        if enable_inserts:
            tools.extend(as_tool_specs(self.schemas))
        self.bound_tools = tools
        self.tool_choice = (
            PATCH_DOC if enable_updates and not (enable_inserts or enable_deletes) else "any"
        )

    def _directive(self, existing: Union[Dict[str, Any], List[Any]]) -> str:
        parts = []
        if isinstance(existing, dict):
            for name, record in existing.items():
                schema = self.schemas.get(name)
                schema_str = (
                    f"\n<json_schema>\n{json.dumps(get_schema(schema))}\n</json_schema>"
                    if schema is not None
                    else ""
                )
                parts.append(
                    f"<schema id={name}>\n<instance>\n{json.dumps(record, default=str)}\n"
                    f"</instance>{schema_str}\n</schema>"
                )
        else:
            for record_id, schema_name, record in existing:
                parts.append(
                    f'<instance id={record_id} schema_type="{schema_name}">\n'
                    f"{json.dumps(record, default=str)}\n</instance>"
                )
        cmd = "Generate JSONPatches to update the existing schema instances."
        if self.enable_inserts:
            cmd += (
                " If you need to extract or insert *new* instances of the schemas"
                ", call the relevant function(s)."
            )
        if self.enable_deletes:
            cmd += f" If an instance should no longer exist, call {REMOVE_DOC} with its id."
        existing_schemas = "\n".join(parts)
        return f"{cmd}\n<existing>\n{existing_schemas}\n</existing>\n"

    def _setup(
        self, state: ExtractionState
    ) -> Tuple[List[AnyMessage], Union[Dict[str, Any], List[Any]], Runnable]:
        if not state.existing:
            raise ValueError("No existing schemas provided.")
        existing = coerce_existing(
            state.existing, self.schemas, self.existing_schema_policy
        )
        directive = self._directive(existing)
        messages = list(state.messages)
        if messages and message_kind(messages[0]) == "system":
            system = messages.pop(0)
            if isinstance(system.content, str):
                content: Any = system.content + "\n\n" + directive
            else:
                content = list(system.content) + ["\n\n" + directive]
            system_message = SystemMessage(content=content, id=system.id)
        else:
            system_message = SystemMessage(content=directive)
        tools = list(self.bound_tools)
        if self.enable_deletes:
            tools.append(_create_remove_doc_from_existing(existing))
        bound_model = self.llm.bind_tools(tools, tool_choice=self.tool_choice)
        return [system_message, *messages], existing, bound_model

    @ls.traceable(tags=["langsmith:hidden"])
    def _teardown(
        self,
        msg: AIMessage,
        existing: Union[Dict[str, Any], List[Any]],
        state: ExtractionState,
    ) -> dict:
        rt = ls.get_current_run_tree()
        resolved: List[Tuple[Optional[str], ToolCall]] = []
        updated_docs: Dict[str, str] = {}
        for tc in msg.tool_calls:
            call_id = tc.get("id") or str(uuid.uuid4())
            if tc["name"] != PATCH_DOC:
                doc_id = (
                    str(tc["args"].get("json_doc_id"))
                    if tc["name"] == REMOVE_DOC
                    else None
                )
                resolved.append(
                    (doc_id, ToolCall(id=call_id, name=tc["name"], args=tc["args"]))
                )
                continue
            json_doc_id = str(tc["args"].get("json_doc_id"))
            target = resolve_existing(existing, json_doc_id)
            if target is None:
                _record_error(rt, f"Could not find existing schema for {json_doc_id}")
                continue
            patches = ensure_patches(tc["args"])
            if not patches and self.tool_choice != PATCH_DOC:
                logger.warning(f"Dropping PatchDoc for {json_doc_id} with no patches")
                continue
            try:
                patched = apply_patches(target.record, patches)
            except JsonPatchException as e:
                _record_error(rt, f"Could not apply patch to {json_doc_id}: {repr(e)}")
                continue
            resolved.append(
                (json_doc_id, ToolCall(id=call_id, name=target.schema_name, args=patched))
            )
            updated_docs[call_id] = json_doc_id

        tool_calls = _last_write_wins(resolved)
        kept = {tc["id"] for tc in tool_calls}
        ai_message = AIMessage(
            content=msg.content,
            tool_calls=tool_calls,
            additional_kwargs={
                "updated_docs": {k: v for k, v in updated_docs.items() if k in kept}
            },
            id=str(uuid.uuid4()),
        )
        return {
            "messages": [ai_message],
            "attempts": state.attempts + 1,
            "msg_id": ai_message.id,
            "origin_id": state.origin_id or ai_message.id,
        }

    def _failed(self, state: ExtractionState, error: Exception) -> dict:
        logger.error(f"Could not generate updates: {repr(error)}")
        return {
            "messages": [
                HumanMessage(
                    content="Fix the validation error while"
                    f" also avoiding: {repr(str(error))}"
                )
            ],
            "attempts": state.attempts + 1,
        }

    async def ainvoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        """Generate JSONPatches to update the existing records.

        Returns a single AIMessage with the patched records, as if
            they were extracted from scratch.
        """
        messages, existing, bound_model = self._setup(state)
        try:
            msg = await bound_model.ainvoke(messages, config)
            return self._teardown(cast(AIMessage, msg), existing, state)
        except Exception as e:
            return self._failed(state, e)

    def invoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        messages, existing, bound_model = self._setup(state)
        try:
            msg = bound_model.invoke(messages, config)
            return self._teardown(cast(AIMessage, msg), existing, state)
        except Exception as e:
            return self._failed(state, e)

    def as_runnable(self):
        return RunnableLambda(self.invoke, self.ainvoke, name="extract_updates")


def _known_kinds(messages: Sequence[Any]) -> List[Any]:
    return [as_known_kind(m) if isinstance(m, BaseMessage) else m for m in messages]


def _last_write_wins(resolved: Sequence[Tuple[Optional[str], ToolCall]]) -> List[ToolCall]:
    """Keep only the last call addressed to each document id."""
    last = {doc_id: i for i, (doc_id, _) in enumerate(resolved) if doc_id is not None}
    return [
        tc
        for i, (doc_id, tc) in enumerate(resolved)
        if doc_id is None or last[doc_id] == i
    ]


def create_extractor(
    llm: Union[str, BaseChatModel],
    *,
    tools: Sequence[TOOL_T],
    tool_choice: Optional[str] = None,
    enable_inserts: bool = False,
    enable_updates: bool = True,
    enable_deletes: bool = False,
    existing_schema_policy: ExistingSchemaPolicy = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    format_error: Optional[ErrorFormatter] = None,
) -> Runnable[InputsLike, ExtractionOutputs]:
    """Create an extractor that generates validated structured outputs using an LLM.

    Generated tool calls are validated against their schemas. Calls that
    fail are repaired with JSONPatch edits rather than regenerated, and
    existing records are updated the same way.

    Args:
        llm (BaseChatModel): The language model that generates the tool calls
            and the corrections. A string is resolved with
            ``langchain.chat_models.init_chat_model``.
        tools (Sequence[TOOL_T]): The schemas to extract. Can be BaseTool,
            Type[BaseModel], a TypedDict, a Callable or a JSON schema dict.
        tool_choice (Optional[str]): The specific tool to use. If None,
            the LLM chooses whether to use (or not use) a tool. (default: None)
        enable_inserts (bool): Whether the LLM may extract new records
            even when it receives existing ones. (default: False)
        enable_updates (bool): Whether the LLM may patch existing records
            with PatchDoc. (default: True)
        enable_deletes (bool): Whether the LLM may remove existing records
            with RemoveDoc. (default: False)
        existing_schema_policy (bool | Literal["ignore"] | None): How to handle
            existing records whose schema is not among ``tools``. True raises,
            False patches them as plain documents, "ignore" drops them and
            None leaves them unchecked. (default: None)
        max_attempts (int): Model rounds allowed per call. Can be overridden
            per call via ``config["configurable"]["max_attempts"]``. (default: 3)
        format_error (Optional[ErrorFormatter]): Renders a validation error
            into the tool message the model sees.

    Returns:
        Runnable[InputsLike, ExtractionOutputs]: A runnable that returns the
        final AI message, the validated responses and their metadata.

    Examples:
        >>> from pydantic import BaseModel, Field
        >>>
        >>> class UserInfo(BaseModel):
        ...     name: str = Field(description="User's full name")
        ...     age: int = Field(description="User's age in years")
        >>>
        >>> extractor = create_extractor(llm, tools=[UserInfo])
        >>> result = extractor.invoke("My name is Alice and I'm 30 years old")
        >>> result["responses"][0]
        UserInfo(name='Alice', age=30)

        Updating an existing record:
        >>> result = extractor.invoke(
        ...     {
        ...         "messages": [("human", "I just turned 31.")],
        ...         "existing": {"UserInfo": {"name": "Alice", "age": 30}},
        ...     }
        ... )
        >>> result["response_metadata"]  # doctest: +SKIP
        [{'id': '...', 'json_doc_id': 'UserInfo'}]
    """  # noqa
    if not any((enable_inserts, enable_updates, enable_deletes)):
        raise ValueError(
            "At least one of enable_inserts, enable_updates,"
            " or enable_deletes must be True."
        )
    if isinstance(llm, str):
        try:
            from langchain.chat_models import init_chat_model
        except ImportError:
            raise ImportError(
                "Creating extractors from a string requires langchain>=0.3.0,"
                " as well as the provider-specific package"
                " (like langchain-openai, langchain-anthropic, etc.)"
                " Please install langchain to continue."
            )
        llm = init_chat_model(llm)
    schemas = ensure_tools(tools)

    def format_exception(
        error: BaseException, call: ToolCall, schema: Type[BaseModel]
    ) -> str:
        return (
            f"Error:\n\n```\n{str(error)}\n```\n"
            "Expected Parameter Schema:\n\n"
            f"```json\n{json.dumps(get_schema(schema))}\n```\n"
            f"Please use {PATCH_FUNCTION_ERRORS} to fix all validation errors"
            f" for json_doc_id=[{call['id']}]."
        )

    validator = _Validator(
        schemas,
        format_error=format_error or format_exception,
        enable_deletes=enable_deletes,
        existing_schema_policy=existing_schema_policy,
    )
    updater = _ExtractUpdates(
        llm,
        schemas,
        enable_inserts=enable_inserts,
        enable_updates=enable_updates,
        enable_deletes=enable_deletes,
        existing_schema_policy=existing_schema_policy,
    )

    builder = StateGraph(ExtractionState)
    builder.add_node("extract", _Extract(llm, schemas, tool_choice).as_runnable())
    builder.add_node("extract_updates", updater.as_runnable())
    builder.add_node("validate", validator.as_runnable())
    builder.add_node("patch", _Patch(llm, valid_tool_names=list(schemas)).as_runnable())

    def _budget(config: RunnableConfig) -> int:
        return (config.get("configurable") or {}).get("max_attempts", max_attempts)

    def enter(state: ExtractionState) -> Literal["extract", "extract_updates"]:
        if state.existing:
            return "extract_updates"
        return "extract"

    def validate_or_retry(
        state: ExtractionState, config: RunnableConfig
    ) -> Literal["validate", "extract_updates", "__end__"]:
        if state.messages and message_kind(state.messages[-1]) == "ai":
            return "validate"
        if state.attempts >= _budget(config):
            return "__end__"
        return "extract_updates"

    def handle_retries(
        state: ExtractionState, config: RunnableConfig
    ) -> Literal["patch", "__end__"]:
        """After validation, decide whether to run a correction round or end."""
        if state.attempts >= _budget(config):
            return "__end__"
        if _failed_tool_call_ids(state.messages):
            return "patch"
        return "__end__"

    builder.add_conditional_edges(START, enter)
    builder.add_edge("extract", "validate")
    builder.add_conditional_edges("extract_updates", validate_or_retry)
    builder.add_conditional_edges("validate", handle_retries, path_map=["patch", END])
    builder.add_edge("patch", "validate")
    compiled = builder.compile(checkpointer=False)
    compiled.name = "PatchCall"

    def filter_state(state: dict) -> ExtractionOutputs:
        """Filter the state to only include the validated AIMessage + responses."""
        msg_id = state.get("msg_id")
        messages = state.get("messages") or []
        index = next(
            (
                i
                for i, m in enumerate(messages)
                if msg_id and m.id == msg_id and message_kind(m) == "ai"
            ),
            None,
        )
        if index is None:
            return ExtractionOutputs(
                messages=[],
                responses=[],
                response_metadata=[],
                attempts=state.get("attempts", 0),
            )
        msg = messages[index]
        results = {
            m.tool_call_id: m
            for m in messages[index + 1 :]
            if message_kind(m) == "tool"
        }
        updated_docs = msg.additional_kwargs.get("updated_docs") or {}
        responses = []
        response_metadata = []
        for tc in msg.tool_calls:
            if tc["name"] in INTERNAL_TOOL_NAMES:
                continue
            result = results.get(tc["id"])
            if result is None or result.status == "error":
                continue
            if not isinstance(result.artifact, BaseModel):
                continue
            responses.append(result.artifact)
            meta = {"id": tc["id"]}
            if json_doc_id := updated_docs.get(tc["id"]):
                meta["json_doc_id"] = json_doc_id
            response_metadata.append(meta)
        return ExtractionOutputs(
            messages=[msg],
            responses=responses,
            response_metadata=response_metadata,
            attempts=state.get("attempts", 0),
        )

    def coerce_inputs(state: InputsLike) -> dict:
        """Coerce inputs to the expected format."""
        if isinstance(state, str):
            return {"messages": [HumanMessage(content=state)]}
        if isinstance(state, PromptValue):
            return {"messages": _known_kinds(state.to_messages())}
        if isinstance(state, BaseMessage):
            return {"messages": _known_kinds([state])}
        if isinstance(state, list):
            return {"messages": _known_kinds(state)}
        if isinstance(state, dict):
            messages = state.get("messages") or []
            if isinstance(messages, PromptValue):
                messages = messages.to_messages()
            elif isinstance(messages, (str, BaseMessage)):
                messages = [messages]
            existing = state.get("existing")
            if existing:
                existing = coerce_existing(existing, schemas, existing_schema_policy)
            return {"messages": _known_kinds(messages), "existing": existing or None}
        raise ValueError(
            f"Invalid input type: {type(state)}. Expected a string, a list of"
            " messages, a PromptValue or a dict with 'messages' and 'existing'."
        )

    return coerce_inputs | compiled | filter_state
