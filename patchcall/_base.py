"""Facade module for the patchcall package.

Re-exports the extractor together with the pieces it is assembled from, so
callers and tests can reach them from a single place.
"""

from patchcall.edits import (
    PatchTestFailure,
    apply_patches,
    ensure_patches,
    normalize_patches,
)
from patchcall.existing import coerce_existing, list_existing_ids, resolve_existing
from patchcall.extract import _Extract, _ExtractUpdates, create_extractor
from patchcall.patch import _Patch
from patchcall.schema import PatchDoc, PatchFunctionErrors
from patchcall.states import ExtendedExtractState, ExtractionState
from patchcall.tools import ensure_tools
from patchcall.types import ExtractionInputs, ExtractionOutputs, SchemaInstance
from patchcall.validation import _Validator

__all__ = [
    "create_extractor",
    "ensure_tools",
    "apply_patches",
    "normalize_patches",
    "ensure_patches",
    "PatchTestFailure",
    "resolve_existing",
    "list_existing_ids",
    "coerce_existing",
    "ExtractionInputs",
    "ExtractionOutputs",
    "ExtractionState",
    "ExtendedExtractState",
    "SchemaInstance",
    "PatchDoc",
    "PatchFunctionErrors",
    "_Extract",
    "_ExtractUpdates",
    "_Patch",
    "_Validator",
]
