"""Canonical JSON for ontology snapshots.

Two snapshots that describe the same ontology must serialize to the same
bytes. Dict keys are sorted here. Name lists with set semantics (access
groups, entities, per-function access and entities) carry no order of their
own, so they must already be sorted and duplicate-free when they get here:
build them with ``sorted_names`` and ``check_snapshot`` rejects anything else.
"""

from __future__ import annotations

import json
import math
from typing import Any, Iterable, List


SNAPSHOT_SET_KEYS = ("access_groups", "entities")
FUNCTION_SET_KEYS = ("access", "entities")


class CanonicalJsonTypeError(TypeError):
    """Raised when a snapshot value cannot be serialized to canonical JSON."""


class UnsortedSetError(ValueError):
    """Raised when a set-like name list is out of order or repeats a name."""


def sorted_names(values: Iterable[Any], path: str = "$") -> List[str]:
    """Return the set-like list form of ``values``: unique, non-empty strings in sorted order."""
    names = set()
    for idx, value in enumerate(values):
        if not isinstance(value, str) or not value:
            raise CanonicalJsonTypeError(f"Expected a non-empty name at {path}[{idx}], got {value!r}")
        names.add(value)
    return sorted(names)


def _check_names(value: Any, path: str) -> None:
    if value is None:
        return
    if not isinstance(value, list):
        raise CanonicalJsonTypeError(f"Expected a list of names at {path}: {type(value).__name__}")
    if value != sorted_names(value, path):
        raise UnsortedSetError(f"Names at {path} must be sorted and unique: {value!r}")


def check_snapshot(snapshot: Any) -> None:
    """Reject a snapshot whose set-like name lists are not in canonical form."""
    if not isinstance(snapshot, dict):
        raise CanonicalJsonTypeError(f"Snapshot must be an object, got {type(snapshot).__name__}")
    for key in SNAPSHOT_SET_KEYS:
        _check_names(snapshot.get(key), f"$.{key}")
    functions = snapshot.get("functions") or {}
    if not isinstance(functions, dict):
        raise CanonicalJsonTypeError("Expected an object at $.functions")
    for name, shape in functions.items():
        if not isinstance(shape, dict):
            raise CanonicalJsonTypeError(f"Expected an object at $.functions.{name}")
        for key in FUNCTION_SET_KEYS:
            _check_names(shape.get(key), f"$.functions.{name}.{key}")


def _validate(obj: Any, path: str = "$") -> None:
    if obj is None or isinstance(obj, (str, bool, int)):
        return
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite number at {path}: {obj!r}")
        return
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(f"Object keys must be strings at {path}: {key!r}")
            _validate(value, f"{path}.{key}")
        return
    if isinstance(obj, (list, tuple)):
        for idx, item in enumerate(obj):
            _validate(item, f"{path}[{idx}]")
        return
    # sets and frozensets land here too; they have no canonical order
    raise CanonicalJsonTypeError(f"Unsupported type at {path}: {type(obj).__name__}")


def canonical_dumps(obj: Any) -> str:
    """Compact form: sorted keys, no whitespace, non-ASCII kept as UTF-8."""
    _validate(obj)
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def snapshot_dumps(snapshot: Any) -> str:
    """``canonical_dumps`` for a whole snapshot, after ``check_snapshot``."""
    check_snapshot(snapshot)
    return canonical_dumps(snapshot)


def pretty_dumps(obj: Any) -> str:
    """Indented form for files on disk. Same key order as ``canonical_dumps``."""
    _validate(obj)
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, indent=2, allow_nan=False) + "\n"
