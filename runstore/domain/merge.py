"""
Merge rules shared by the writer and the reconstructor.

Every function here is pure: inputs are never mutated and the result does
not alias them.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Optional

from runstore.core.constants import METADATA_KEY

KeyExtractor = Callable[[dict[str, Any]], Optional[str]]
ListPolicy = Callable[[list[Any], list[Any]], list[Any]]


def strip_metadata(document: dict[str, Any]) -> dict[str, Any]:
    """Copy of a persisted document without its ``_metadata`` block."""
    return {k: copy.deepcopy(v) for k, v in document.items() if k != METADATA_KEY}


def upsert_by_key(
    existing: list[dict[str, Any]],
    incoming: list[dict[str, Any]],
    extract_key: KeyExtractor,
) -> list[dict[str, Any]]:
    """
    Merge ``incoming`` into ``existing`` by natural key.

    An item whose key is already present replaces the earlier entry in
    place; new keys are appended in arrival order. Items without a key are
    always appended. Duplicate keys already in ``existing`` collapse to the
    last one.
    """
    merged: list[dict[str, Any]] = []
    positions: dict[str, int] = {}

    for item in [*existing, *incoming]:
        key = extract_key(item)
        entry = strip_metadata(item)
        if key is None:
            merged.append(entry)
        elif key in positions:
            merged[positions[key]] = entry
        else:
            positions[key] = len(merged)
            merged.append(entry)

    return merged


def latest_non_empty(previous: list[Any], update: list[Any]) -> list[Any]:
    """A non-empty update replaces the list; an empty one leaves it alone."""
    if update:
        return copy.deepcopy(list(update))
    return copy.deepcopy(list(previous or []))


def merge_documents(
    base: dict[str, Any],
    update: dict[str, Any],
    list_policy: ListPolicy = latest_non_empty,
) -> dict[str, Any]:
    """
    Fold one iteration document into the accumulated one.

    Text takes the latest non-blank value, lists follow ``list_policy``,
    mappings take the latest non-empty mapping, ``None`` never overwrites
    and any other scalar takes the latest value.
    """
    merged = strip_metadata(base)

    for field, value in update.items():
        if field == METADATA_KEY:
            continue

        previous = merged.get(field)
        if isinstance(value, list):
            merged[field] = list_policy(previous if isinstance(previous, list) else [], value)
        elif isinstance(value, str):
            if value.strip() or field not in merged:
                merged[field] = value
        elif isinstance(value, dict):
            if value or field not in merged:
                merged[field] = copy.deepcopy(value)
        elif value is None:
            merged.setdefault(field, None)
        else:
            merged[field] = value

    return merged


def belongs_to_module(file_path: str, module_path: str) -> bool:
    """True when ``file_path`` sits below ``module_path``."""
    if not module_path:
        return False
    return file_path.startswith(module_path + "/") or file_path.startswith(module_path + "\\")


def link_files_to_modules(
    modules: list[dict[str, Any]],
    files: list[dict[str, Any]],
    module_key: str = "module",
    file_key: str = "file",
) -> list[dict[str, Any]]:
    """
    Attach file summaries to modules that carry no file list of their own.

    Association is by path prefix and only affects the returned copies.
    """
    linked: list[dict[str, Any]] = []
    for module in modules:
        entry = copy.deepcopy(module)
        if not entry.get("files"):
            module_path = str(entry.get(module_key) or "")
            matched = [
                copy.deepcopy(f)
                for f in files
                if belongs_to_module(str(f.get(file_key) or ""), module_path)
            ]
            if matched:
                entry["files"] = matched
        linked.append(entry)
    return linked
