"""Lookups over the records an extraction call is asked to update.

Existing records arrive in one of two shapes: a mapping from schema name to
record (one record per schema, addressed by the schema name), or a list of
``SchemaInstance``/``(record_id, schema_name, record)`` triples.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Collection, Dict, List, Literal, Optional, Union

from pydantic import BaseModel

from patchcall.types import ExistingType, SchemaInstance

logger = logging.getLogger("extraction")

ANY_SCHEMA = "__any__"

ExistingSchemaPolicy = Optional[Union[bool, Literal["ignore"]]]


def resolve_existing(existing: ExistingType, doc_id: str) -> Optional[SchemaInstance]:
    """Find the record addressed by ``doc_id``, or None if there isn't one."""
    if isinstance(existing, dict):
        if doc_id not in existing:
            return None
        return SchemaInstance(doc_id, doc_id, existing[doc_id])
    for record_id, schema_name, record in existing:
        if record_id == doc_id:
            if not schema_name:
                logger.error(f"Could not find tool name for json_doc_id {doc_id}")
                return None
            return SchemaInstance(record_id, schema_name, record)
    return None


def list_existing_ids(existing: ExistingType) -> List[str]:
    """Ids a PatchDoc or RemoveDoc call may reference, in first-seen order."""
    if isinstance(existing, dict):
        return list(existing)
    return list(dict.fromkeys(record_id for record_id, *_ in existing))


def coerce_existing(
    existing: Any,
    known_schemas: Collection[str],
    policy: ExistingSchemaPolicy = None,
) -> Union[Dict[str, Any], List[SchemaInstance]]:
    """Normalize caller-supplied records and apply ``existing_schema_policy``.

    Records whose schema is not among ``known_schemas`` are checked against
    the policy: None lets them through unchecked, True raises, False keeps
    them as untyped documents and "ignore" drops them.

    Raises:
        ValueError: If ``existing`` is not one of the supported shapes, or an
            unknown schema is found under the strict policy.
    """
    if isinstance(existing, dict):
        validated = {}
        for key, record in existing.items():
            if _admit(
                key,
                known_schemas,
                policy,
                f"Key '{key}' doesn't match any schema."
                f" Known schemas: {sorted(known_schemas)}",
            ):
                validated[key] = _as_document(record)
        return validated
    if isinstance(existing, list):
        coerced = []
        for i, item in enumerate(existing):
            instance = _as_instance(item, i)
            if _admit(
                instance.schema_name,
                known_schemas,
                policy,
                f"Unknown schema '{instance.schema_name}' at index {i}",
            ):
                coerced.append(instance)
        return coerced
    raise ValueError(
        f"Invalid type for existing. Provided: {type(existing)},"
        f" Expected: dict or list. Supported formats are:\n"
        "1. Dict[str, Any] where keys are tool names\n"
        "2. List[SchemaInstance]\n3. List[Tuple[str, str, Dict[str, Any]]]"
    )


def untyped_schema_names(
    existing: Any, known_schemas: Collection[str], policy: ExistingSchemaPolicy
) -> frozenset[str]:
    """Schema names whose records are carried as plain documents."""
    names = {ANY_SCHEMA}
    if existing and policy is False:
        if isinstance(existing, dict):
            names.update(existing)
        else:
            names.update(schema_name for _, schema_name, _ in existing)
    return frozenset(names - set(known_schemas))


def _admit(
    schema_name: str,
    known_schemas: Collection[str],
    policy: ExistingSchemaPolicy,
    message: str,
) -> bool:
    if policy is None or schema_name in known_schemas or schema_name == ANY_SCHEMA:
        return True
    if policy is True:
        raise ValueError(message)
    if policy == "ignore":
        logger.warning(f"Ignoring unknown schema: {schema_name}")
        return False
    return True


def _as_document(record: Any) -> Any:
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json")
    return record


def _as_instance(item: Any, index: int) -> SchemaInstance:
    if isinstance(item, BaseModel):
        return SchemaInstance(
            str(uuid.uuid4()), type(item).__name__, item.model_dump(mode="json")
        )
    if isinstance(item, tuple) and len(item) == 3:
        record_id, schema_name, record = item
        return SchemaInstance(record_id, schema_name, _as_document(record))
    if isinstance(item, tuple) and len(item) == 2 and isinstance(item[1], BaseModel):
        record_id, model = item
        return SchemaInstance(record_id, type(model).__name__, _as_document(model))
    raise ValueError(
        f"Invalid item at index {index} in existing list."
        f" Provided: {item}, Expected: SchemaInstance"
        f" or Tuple[str, str, dict] or BaseModel"
    )
