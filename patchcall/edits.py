"""JSONPatch edits over plain JSON documents.

``apply_patches`` implements the RFC 6902 operations with a few
accommodations for how models actually write patches: missing intermediate
containers are created, indices are overwritten rather than inserted, and an
"append" aimed at a string concatenates to it. ``normalize_patches`` recovers
an edit list from whatever shape the model put in its ``patches`` argument.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, List, Sequence

from jsonpatch import (  # type: ignore[import-untyped]
    InvalidJsonPatch,
    JsonPatchConflict,
    JsonPatchTestFailed,
)
from jsonpointer import JsonPointer, JsonPointerException  # type: ignore[import-untyped]
from pydantic import BaseModel

logger = logging.getLogger("extraction")

_APPEND = "-"
_OPS = frozenset({"add", "remove", "replace", "move", "copy", "test"})


class PatchTestFailure(JsonPatchTestFailed):
    """A ``test`` operation found a value other than the one expected."""

    def __init__(self, path: str, expected: Any, actual: Any):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Test failed at {path!r}: expected {json.dumps(expected, default=str)},"
            f" got {'nothing' if actual is _MISSING else json.dumps(actual, default=str)}"
        )


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


_MISSING: Any = _Missing()


def apply_patches(doc: Any, patches: Sequence[Dict[str, Any]]) -> Any:
    """Apply ``patches`` in order to a deep copy of ``doc`` and return it.

    ``doc`` is never modified. Each patch sees the result of the ones before
    it. A failing ``test`` raises ``PatchTestFailure``; malformed patches
    raise ``InvalidJsonPatch`` and unreachable locations ``JsonPatchConflict``.
    """
    result = copy.deepcopy(doc)
    for patch in patches:
        result = _apply_one(result, patch)
    return result


def _apply_one(doc: Any, patch: Dict[str, Any]) -> Any:
    if not isinstance(patch, dict):
        raise InvalidJsonPatch(f"Patch must be an object, got {patch!r}")
    op = patch.get("op")
    if op not in _OPS:
        raise InvalidJsonPatch(f"Unknown or missing operation {op!r} in {patch!r}")
    if "path" not in patch:
        raise InvalidJsonPatch(f"Operation {op!r} is missing 'path'")
    parts = _parse_pointer(patch["path"])

    if op in ("add", "replace"):
        value = _required(patch, "value", op)
        if op == "add" and parts and parts[-1] == _APPEND:
            base = _get(doc, parts[:-1])
            if isinstance(base, str):
                # Models often "append" to a string as if it were a list.
                return _set(doc, parts[:-1], base + _as_text(value))
        return _set(doc, parts, value)
    if op == "remove":
        _remove(doc, parts)
        return doc
    if op in ("move", "copy"):
        source = _parse_pointer(_required(patch, "from", op))
        value = _get(doc, source)
        if value is _MISSING:
            raise JsonPatchConflict(f"Nothing to {op} at {patch['from']!r}")
        if op == "move":
            if parts[: len(source)] == source and len(parts) > len(source):
                raise InvalidJsonPatch(
                    f"Cannot move {patch['from']!r} into its own child {patch['path']!r}"
                )
            _remove(doc, source)
        else:
            value = copy.deepcopy(value)
        return _set(doc, parts, value)

    expected = _required(patch, "value", op)
    actual = _get(doc, parts)
    if actual is _MISSING or not _json_equal(actual, expected):
        raise PatchTestFailure(patch["path"], expected, actual)
    return doc


def _required(patch: Dict[str, Any], key: str, op: str) -> Any:
    if key in patch:
        return patch[key]
    if key == "from" and "from_" in patch:
        return patch["from_"]
    raise InvalidJsonPatch(f"Operation {op!r} is missing {key!r}")


def _parse_pointer(path: Any) -> List[str]:
    if not isinstance(path, str):
        raise InvalidJsonPatch(f"Path must be a string, got {path!r}")
    if path and not path.startswith("/"):
        path = "/" + path
    try:
        return list(JsonPointer(path).parts)
    except JsonPointerException as e:
        raise InvalidJsonPatch(str(e)) from e


def _is_digits(part: str) -> bool:
    # str.isdigit also accepts non-ASCII digits such as "²" that int() rejects.
    return part.isascii() and part.isdigit()


def _is_index(part: str) -> bool:
    return part == _APPEND or _is_digits(part)


def _index(container: list, part: str, *, for_insert: bool) -> int:
    if part == _APPEND:
        if for_insert:
            return len(container)
        raise JsonPatchConflict("'-' only addresses the end of an array when adding")
    if not _is_digits(part):
        raise InvalidJsonPatch(f"Invalid array index {part!r}")
    idx = int(part)
    limit = len(container) if for_insert else len(container) - 1
    if idx > limit:
        raise JsonPatchConflict(f"Index {idx} out of range for array of {len(container)}")
    return idx


def _get(doc: Any, parts: List[str]) -> Any:
    current = doc
    for part in parts:
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list):
            if not _is_digits(part) or int(part) >= len(current):
                return _MISSING
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _walk(doc: Any, parts: List[str]) -> Any:
    """Return the container holding ``parts[-1]``, creating it as needed."""
    current = doc
    for i, part in enumerate(parts[:-1]):
        make = (lambda: []) if _is_index(parts[i + 1]) else (lambda: {})
        if isinstance(current, dict):
            if current.get(part) is None:
                current[part] = make()
            current = current[part]
        elif isinstance(current, list):
            idx = _index(current, part, for_insert=True)
            if idx == len(current):
                current.append(make())
            elif current[idx] is None:
                current[idx] = make()
            current = current[idx]
        else:
            raise JsonPatchConflict(
                f"Cannot traverse into {type(current).__name__} at segment {part!r}"
            )
    return current


def _set(doc: Any, parts: List[str], value: Any) -> Any:
    if not parts:
        return value
    container = _walk(doc, parts)
    key = parts[-1]
    if isinstance(container, dict):
        container[key] = value
    elif isinstance(container, list):
        idx = _index(container, key, for_insert=True)
        if idx == len(container):
            container.append(value)
        else:
            container[idx] = value
    else:
        raise JsonPatchConflict(
            f"Cannot set {key!r} on a value of type {type(container).__name__}"
        )
    return doc


def _remove(doc: Any, parts: List[str]) -> None:
    if not parts:
        raise JsonPatchConflict("Cannot remove the document root")
    container = _get(doc, parts[:-1])
    key = parts[-1]
    if isinstance(container, dict):
        if key not in container:
            raise JsonPatchConflict(f"Cannot remove missing key {key!r}")
        del container[key]
    elif isinstance(container, list):
        del container[_index(container, key, for_insert=False)]
    else:
        raise JsonPatchConflict(f"Nothing to remove at segment {key!r}")


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def _json_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(
            _json_equal(v, right[k]) for k, v in left.items()
        )
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(
            _json_equal(a, b) for a, b in zip(left, right)
        )
    return left == right


def normalize_patches(raw: Any) -> List[Dict[str, Any]]:
    """Recover a list of patch operations from loosely structured model output.

    Lists are returned as given (pydantic items are dumped to dicts). Strings
    are parsed as JSON, falling back to the first JSON array embedded in
    surrounding prose. Anything else yields an empty list.
    """
    if isinstance(raw, list):
        return [
            p.model_dump(by_alias=True, exclude_unset=True)
            if isinstance(p, BaseModel)
            else p
            for p in raw
        ]
    if not isinstance(raw, str):
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = _first_embedded_array(raw)
    return normalize_patches(parsed) if isinstance(parsed, list) else []


def _first_embedded_array(text: str) -> Any:
    decoder = json.JSONDecoder()
    start = text.find("[")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            pass
        else:
            if isinstance(value, list):
                return value
        start = text.find("[", start + 1)
    return None


def ensure_patches(args: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Read the ``patches`` argument of a PatchDoc/PatchFunctionErrors call."""
    patches = normalize_patches(args.get("patches"))
    if args.get("patches") and not patches:
        logger.warning(f"Could not recover patches from {args.get('patches')!r}")
    return patches
