"""Collect field_from references from a schema tree."""

from __future__ import annotations

from typing import Dict, List

from schema_tree import ARRAY, FIELD_FROM, OBJECT, WRAPPER_KINDS, SchemaIntrospectionFailure, SchemaNode


FieldReference = Dict[str, str]

ROOT_PATH = "(root)"


def _walk(node: SchemaNode, path: str, out: List[FieldReference]) -> None:
    if not isinstance(node, SchemaNode):
        raise SchemaIntrospectionFailure(f"Not a schema node: {type(node).__name__}", path or ROOT_PATH)
    if node.annotation is not None and node.annotation.kind == FIELD_FROM:
        out.append({"path": path or ROOT_PATH, "function_name": node.annotation.function_name})
    if node.kind == OBJECT:
        for name, child in node.fields:
            _walk(child, f"{path}.{name}" if path else name, out)
    elif node.kind == ARRAY and node.element is not None:
        _walk(node.element, f"{path}[]", out)
    elif node.kind in WRAPPER_KINDS and node.inner is not None:
        _walk(node.inner, path, out)


def extract_references(schema: SchemaNode, path: str = "") -> List[FieldReference]:
    """Pre-order list of ``{path, function_name}`` in declaration order.

    Object members extend the path with ``.name``, array elements with ``[]``;
    optional, nullable and default wrappers keep the path unchanged.
    """
    out: List[FieldReference] = []
    _walk(schema, path, out)
    return out


def referenced_functions(schema: SchemaNode) -> List[str]:
    seen: List[str] = []
    for ref in extract_references(schema):
        if ref["function_name"] not in seen:
            seen.append(ref["function_name"])
    return seen
