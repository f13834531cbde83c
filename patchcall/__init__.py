"""Validated tool calling and extraction with patch-based retries.

This package creates extractors that generate, validate and correct
structured outputs from language models. Invalid tool calls and existing
records are both repaired with JSONPatch edits instead of being regenerated.
"""

from patchcall._base import (
    ExtractionInputs,
    ExtractionOutputs,
    PatchTestFailure,
    SchemaInstance,
    apply_patches,
    create_extractor,
    ensure_patches,
    ensure_tools,
    normalize_patches,
)

__all__ = [
    "create_extractor",
    "ensure_tools",
    "apply_patches",
    "normalize_patches",
    "ensure_patches",
    "PatchTestFailure",
    "ExtractionInputs",
    "ExtractionOutputs",
    "SchemaInstance",
]
