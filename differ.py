"""Structured diff between two ontology snapshots."""

from __future__ import annotations

from typing import Any, Dict, List

from canonicalize import Snapshot, empty_snapshot
from ontogate.canonical_json import canonical_dumps
from ontogate.ontology_hash import ontology_hash


ChangeRecord = Dict[str, Any]
Diff = Dict[str, Any]

ADDED = "added"
REMOVED = "removed"
MODIFIED = "modified"

KIND_ACCESS_GROUP = "access_group"
KIND_ENTITY = "entity"
KIND_FUNCTION = "function"

PUBLIC_GROUP = "public"


def _record(change_type: str, kind: str, name: str, field_changes: List[dict] | None = None) -> ChangeRecord:
    return {"type": change_type, "kind": kind, "name": name, "field_changes": field_changes or []}


def _same(a: Any, b: Any) -> bool:
    return canonical_dumps(a) == canonical_dumps(b)


def _function_field_changes(old_fn: dict, new_fn: dict) -> List[dict]:
    changes: List[dict] = []
    for key in ("access", "entities"):
        old_values = sorted(set(old_fn.get(key) or []))
        new_values = sorted(set(new_fn.get(key) or []))
        if old_values != new_values:
            changes.append({"field": key, "old": old_values, "new": new_values})
    if old_fn.get("description") != new_fn.get("description"):
        changes.append({"field": "description", "old": old_fn.get("description"), "new": new_fn.get("description")})
    for key in ("inputs", "outputs"):
        if not _same(old_fn.get(key), new_fn.get(key)):
            changes.append({"field": f"{key}_changed", "old": False, "new": True})
    if not _same(old_fn.get("field_references") or [], new_fn.get("field_references") or []):
        changes.append(
            {
                "field": "field_references",
                "old": list(old_fn.get("field_references") or []),
                "new": list(new_fn.get("field_references") or []),
            }
        )
    for key in ("uses_user_context", "uses_organization_context"):
        old_flag = bool(old_fn.get(key))
        new_flag = bool(new_fn.get(key))
        if old_flag != new_flag:
            changes.append({"field": key, "old": old_flag, "new": new_flag})
    return changes


def _name_set_changes(kind: str, old_names: List[str], new_names: List[str]) -> List[ChangeRecord]:
    old_set = set(old_names or [])
    new_set = set(new_names or [])
    records = [_record(ADDED, kind, name) for name in sorted(new_set - old_set)]
    records.extend(_record(REMOVED, kind, name) for name in sorted(old_set - new_set))
    return records


def diff(old_snapshot: Snapshot | None, new_snapshot: Snapshot) -> Diff:
    """Compare a locked snapshot (or None for first run) with the current one.

    Emits one record per changed (kind, name). Records are grouped by kind,
    then added, removed and modified, each in name order.
    """
    first_run = old_snapshot is None
    old = old_snapshot if old_snapshot is not None else empty_snapshot(new_snapshot.get("name", ""))

    changes: List[ChangeRecord] = []
    changes.extend(_name_set_changes(KIND_ACCESS_GROUP, old.get("access_groups"), new_snapshot.get("access_groups")))
    changes.extend(_name_set_changes(KIND_ENTITY, old.get("entities"), new_snapshot.get("entities")))

    old_fns = old.get("functions") or {}
    new_fns = new_snapshot.get("functions") or {}
    for name in sorted(set(new_fns) - set(old_fns)):
        changes.append(_record(ADDED, KIND_FUNCTION, name))
    for name in sorted(set(old_fns) - set(new_fns)):
        changes.append(_record(REMOVED, KIND_FUNCTION, name))
    for name in sorted(set(old_fns) & set(new_fns)):
        field_changes = _function_field_changes(old_fns[name], new_fns[name])
        if field_changes:
            changes.append(_record(MODIFIED, KIND_FUNCTION, name, field_changes))

    old_hash = None if first_run else ontology_hash(old)
    new_hash = ontology_hash(new_snapshot)
    return {
        "has_changes": first_run or bool(changes) or old_hash != new_hash,
        "changes": changes,
        "added_count": sum(1 for c in changes if c["type"] == ADDED),
        "removed_count": sum(1 for c in changes if c["type"] == REMOVED),
        "modified_count": sum(1 for c in changes if c["type"] == MODIFIED),
        "old_hash": old_hash,
        "new_hash": new_hash,
        "new_snapshot": new_snapshot,
    }


def _reachable_by_public(fn: dict | None) -> bool:
    return bool(fn) and PUBLIC_GROUP in (fn.get("access") or [])


def public_expansions(diff_result: Diff) -> List[str]:
    """Functions that became reachable by the ``public`` group."""
    names: List[str] = []
    new_fns = (diff_result.get("new_snapshot") or {}).get("functions") or {}
    for change in diff_result.get("changes") or []:
        if change["kind"] != KIND_FUNCTION:
            continue
        name = change["name"]
        if change["type"] == ADDED and _reachable_by_public(new_fns.get(name)):
            names.append(name)
        elif change["type"] == MODIFIED:
            for fc in change["field_changes"]:
                if fc["field"] == "access" and PUBLIC_GROUP in fc["new"] and PUBLIC_GROUP not in fc["old"]:
                    names.append(name)
    return names


def _fmt_list(values: List[Any]) -> str:
    return "[" + ", ".join(str(v) for v in values) + "]"


def format_diff(diff_result: Diff) -> str:
    if not diff_result.get("has_changes"):
        return "No changes detected."
    lines = ["Ontology changes detected:", ""]
    changes = diff_result.get("changes") or []
    new_fns = (diff_result.get("new_snapshot") or {}).get("functions") or {}
    sections = (
        (KIND_ACCESS_GROUP, "Access groups:"),
        (KIND_ENTITY, "Entities:"),
        (KIND_FUNCTION, "Functions:"),
    )
    markers = {ADDED: "+", REMOVED: "-", MODIFIED: "~"}
    for kind, title in sections:
        records = [c for c in changes if c["kind"] == kind]
        if not records:
            continue
        lines.append(title)
        for change in records:
            lines.append(f"  {markers[change['type']]} {change['name']}")
            if kind == KIND_FUNCTION and change["type"] == ADDED:
                lines.append(f"    Access: {_fmt_list(new_fns.get(change['name'], {}).get('access') or [])}")
            for fc in change["field_changes"]:
                field_name = fc["field"]
                if field_name in ("access", "entities"):
                    lines.append(f"    {field_name.capitalize()}: {_fmt_list(fc['old'])} -> {_fmt_list(fc['new'])}")
                elif field_name == "description":
                    lines.append(f"    Description: {fc['old']!r} -> {fc['new']!r}")
                elif field_name == "inputs_changed":
                    lines.append("    Inputs: schema changed")
                elif field_name == "outputs_changed":
                    lines.append("    Outputs: schema changed")
                elif field_name == "field_references":
                    old_refs = [f"{r['path']}<-{r['function_name']}" for r in fc["old"]]
                    new_refs = [f"{r['path']}<-{r['function_name']}" for r in fc["new"]]
                    lines.append(f"    Field references: {_fmt_list(old_refs)} -> {_fmt_list(new_refs)}")
                else:
                    lines.append(f"    {field_name}: {fc['old']} -> {fc['new']}")
        lines.append("")
    if not changes:
        lines.append(f"Fingerprint: {diff_result.get('old_hash')} -> {diff_result.get('new_hash')}")
    exposed = public_expansions(diff_result)
    if exposed:
        lines.append(f"WARNING: newly public functions: {', '.join(exposed)}")
    return "\n".join(lines).rstrip("\n")
