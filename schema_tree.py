"""Typed schema-description tree with categorical field annotations."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Tuple


Issue = Dict[str, Any]

STRING = "string"
NUMBER = "number"
BOOLEAN = "boolean"
OBJECT = "object"
ARRAY = "array"
OPTIONAL = "optional"
NULLABLE = "nullable"
ENUM = "enum"
DEFAULT = "default"

SCALAR_KINDS = {STRING, NUMBER, BOOLEAN, ENUM}
WRAPPER_KINDS = {OPTIONAL, NULLABLE, DEFAULT}
ALL_KINDS = SCALAR_KINDS | WRAPPER_KINDS | {OBJECT, ARRAY}

USER_CONTEXT = "user_context"
ORGANIZATION_CONTEXT = "organization_context"
FIELD_FROM = "field_from"
CONTEXT_ANNOTATIONS = {USER_CONTEXT, ORGANIZATION_CONTEXT}

STRING_FORMATS = {"uuid", "email", "date-time", "date", "uri"}

_FORMAT_PATTERNS = {
    "uuid": re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"),
    "email": re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"),
    "date-time": re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}"),
    "date": re.compile(r"^\d{4}-\d{2}-\d{2}$"),
    "uri": re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:"),
}


@dataclass
class SchemaError(Exception):
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path})" if self.path else self.message


class SchemaDefinitionError(SchemaError):
    """A builder was called with arguments that break a tree invariant."""


class SchemaIntrospectionFailure(SchemaError):
    """A node could not be walked or serialized."""


@dataclass(frozen=True)
class Annotation:
    kind: str
    function_name: str | None = None

    def to_dict(self) -> dict:
        if self.kind == FIELD_FROM:
            return {"kind": self.kind, "function": self.function_name}
        return {"kind": self.kind}


@dataclass(frozen=True, eq=True)
class SchemaNode:
    kind: str
    fields: Tuple[Tuple[str, "SchemaNode"], ...] = ()
    required: frozenset = frozenset()
    element: "SchemaNode | None" = None
    inner: "SchemaNode | None" = None
    values: Tuple[Any, ...] = ()
    default_value: Any = None
    constraints: Tuple[Tuple[str, Any], ...] = ()
    annotation: Annotation | None = None

    def field_map(self) -> Dict[str, "SchemaNode"]:
        return dict(self.fields)

    def field_names(self) -> List[str]:
        return [name for name, _ in self.fields]


def _constraints(**values: Any) -> Tuple[Tuple[str, Any], ...]:
    return tuple(sorted((k, v) for k, v in values.items() if v is not None))


# Builders


def string(
    format: str | None = None,
    min_length: int | None = None,
    max_length: int | None = None,
    pattern: str | None = None,
) -> SchemaNode:
    if format is not None and format not in STRING_FORMATS:
        raise SchemaDefinitionError(f"Unknown string format: {format}")
    if pattern is not None:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise SchemaDefinitionError(f"Invalid pattern: {exc}") from exc
    return SchemaNode(
        kind=STRING,
        constraints=_constraints(format=format, min_length=min_length, max_length=max_length, pattern=pattern),
    )


def number(integer: bool = False, minimum: float | None = None, maximum: float | None = None) -> SchemaNode:
    return SchemaNode(
        kind=NUMBER,
        constraints=_constraints(integer=True if integer else None, minimum=minimum, maximum=maximum),
    )


def boolean() -> SchemaNode:
    return SchemaNode(kind=BOOLEAN)


def enum(*values: Any) -> SchemaNode:
    if not values:
        raise SchemaDefinitionError("enum requires at least one value")
    for value in values:
        if not isinstance(value, (str, int, float, bool)) or isinstance(value, float) and not math.isfinite(value):
            raise SchemaDefinitionError(f"Unsupported enum value: {value!r}")
    return SchemaNode(kind=ENUM, values=tuple(values))


def obj(fields: Dict[str, SchemaNode] | Iterable[Tuple[str, SchemaNode]] | None = None, optional: Iterable[str] = ()) -> SchemaNode:
    """Object node. Fields keep declaration order.

    A field is required unless it is wrapped in ``optional``/``default`` or
    named in ``optional``.
    """
    items = list(fields.items()) if isinstance(fields, dict) else list(fields or [])
    seen: set[str] = set()
    for name, child in items:
        if not isinstance(name, str) or not name:
            raise SchemaDefinitionError("object field names must be non-empty strings")
        if name in seen:
            raise SchemaDefinitionError(f"Duplicate object field: {name}", name)
        if not isinstance(child, SchemaNode):
            raise SchemaDefinitionError(f"Field {name} is not a schema node", name)
        seen.add(name)
    optional_names = set(optional)
    unknown = optional_names - seen
    if unknown:
        raise SchemaDefinitionError(f"Unknown optional fields: {', '.join(sorted(unknown))}")
    required = frozenset(
        name for name, child in items if name not in optional_names and child.kind not in (OPTIONAL, DEFAULT)
    )
    return SchemaNode(kind=OBJECT, fields=tuple(items), required=required)


def array(element: SchemaNode, min_items: int | None = None, max_items: int | None = None) -> SchemaNode:
    if not isinstance(element, SchemaNode):
        raise SchemaDefinitionError("array element must be a schema node")
    if annotation_of(element) is not None:
        # elements are not fields; annotate the element's sub-fields instead
        raise SchemaDefinitionError("array elements cannot carry a categorical annotation")
    return SchemaNode(kind=ARRAY, element=element, constraints=_constraints(min_items=min_items, max_items=max_items))


def optional(inner: SchemaNode) -> SchemaNode:
    return SchemaNode(kind=OPTIONAL, inner=_check_node(inner))


def nullable(inner: SchemaNode) -> SchemaNode:
    return SchemaNode(kind=NULLABLE, inner=_check_node(inner))


def default(inner: SchemaNode, value: Any) -> SchemaNode:
    return SchemaNode(kind=DEFAULT, inner=_check_node(inner), default_value=value)


def _check_node(node: Any) -> SchemaNode:
    if not isinstance(node, SchemaNode):
        raise SchemaDefinitionError("expected a schema node")
    return node


# Categorical annotations


def _annotate(node: SchemaNode, annotation: Annotation) -> SchemaNode:
    node = _check_node(node)
    existing = annotation_of(node)
    if existing is not None:
        raise SchemaDefinitionError(
            f"Field already carries a {existing.kind} annotation; cannot add {annotation.kind}"
        )
    return replace(node, annotation=annotation)


def user_context(node: SchemaNode) -> SchemaNode:
    """Mark a field as injected from the principal's user value."""
    return _annotate(node, Annotation(USER_CONTEXT))


def organization_context(node: SchemaNode) -> SchemaNode:
    """Mark a field as injected from the principal's organization value."""
    return _annotate(node, Annotation(ORGANIZATION_CONTEXT))


def field_from(function_name: str, node: SchemaNode | None = None) -> SchemaNode:
    """String field whose options come from another function's output."""
    if not isinstance(function_name, str) or not function_name:
        raise SchemaDefinitionError("field_from requires a function name")
    return _annotate(node if node is not None else string(), Annotation(FIELD_FROM, function_name))


def annotation_of(node: SchemaNode) -> Annotation | None:
    """Annotation on the node or on any optional/nullable/default wrapper below it."""
    current: SchemaNode | None = node
    while current is not None:
        if current.annotation is not None:
            return current.annotation
        current = current.inner if current.kind in WRAPPER_KINDS else None
    return None


def unwrap(node: SchemaNode) -> SchemaNode:
    while node.kind in WRAPPER_KINDS and node.inner is not None:
        node = node.inner
    return node


def context_field_names(node: SchemaNode, kinds: Iterable[str] = tuple(CONTEXT_ANNOTATIONS)) -> List[str]:
    """Names of direct object fields annotated with one of ``kinds``."""
    kinds = set(kinds)
    node = unwrap(node)
    if node.kind != OBJECT:
        return []
    names = []
    for name, child in node.fields:
        ann = annotation_of(child)
        if ann is not None and ann.kind in kinds:
            names.append(name)
    return names


# Fold


def fold(node: SchemaNode, visit: Callable[[SchemaNode, List[Tuple[str, Any]]], Any]) -> Any:
    """Bottom-up fold. ``visit`` receives the node and its folded children.

    Object children are ``(field_name, result)`` in declaration order, array
    children ``("[]", result)``, wrapper children ``("", result)``.
    """
    if not isinstance(node, SchemaNode):
        raise SchemaIntrospectionFailure(f"Not a schema node: {type(node).__name__}")
    if node.kind == OBJECT:
        children = [(name, fold(child, visit)) for name, child in node.fields]
    elif node.kind == ARRAY:
        if node.element is None:
            raise SchemaIntrospectionFailure("array node has no element")
        children = [("[]", fold(node.element, visit))]
    elif node.kind in WRAPPER_KINDS:
        if node.inner is None:
            raise SchemaIntrospectionFailure(f"{node.kind} node has no inner schema")
        children = [("", fold(node.inner, visit))]
    elif node.kind in SCALAR_KINDS:
        children = []
    else:
        raise SchemaIntrospectionFailure(f"Unknown schema kind: {node.kind}")
    return visit(node, children)


def map_fields(node: SchemaNode, keep: Callable[[str, SchemaNode], bool]) -> SchemaNode:
    """Rebuild the tree, dropping object fields for which ``keep`` is false."""

    def _rebuild(current: SchemaNode) -> SchemaNode:
        if current.kind == OBJECT:
            kept = [(name, _rebuild(child)) for name, child in current.fields if keep(name, child)]
            names = {name for name, _ in kept}
            return replace(current, fields=tuple(kept), required=frozenset(current.required & names))
        if current.kind == ARRAY and current.element is not None:
            return replace(current, element=_rebuild(current.element))
        if current.kind in WRAPPER_KINDS and current.inner is not None:
            return replace(current, inner=_rebuild(current.inner))
        return current

    return _rebuild(node)


# Structural serialization


def _json_safe(value: Any, path: str) -> Any:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise SchemaIntrospectionFailure("Non-finite default value", path)
        return value
    if isinstance(value, (list, tuple)):
        return [_json_safe(item, f"{path}[{idx}]") for idx, item in enumerate(value)]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise SchemaIntrospectionFailure("Default value has non-string key", path)
            out[key] = _json_safe(item, f"{path}.{key}")
        return out
    raise SchemaIntrospectionFailure(f"Default value is not JSON-serializable: {type(value).__name__}", path)


def node_to_dict(node: SchemaNode) -> dict:
    """Structural dict form: kind tag, children, constraints, annotation.

    Object fields are a mapping, so canonical serialization is independent of
    declaration order.
    """

    def _visit(current: SchemaNode, children: List[Tuple[str, Any]]) -> dict:
        out: dict = {"kind": current.kind}
        if current.kind == OBJECT:
            out["fields"] = {name: child for name, child in children}
            out["required"] = sorted(current.required)
        elif current.kind == ARRAY:
            out["element"] = children[0][1]
        elif current.kind in WRAPPER_KINDS:
            out["inner"] = children[0][1]
            if current.kind == DEFAULT:
                out["default"] = _json_safe(current.default_value, "default")
        elif current.kind == ENUM:
            out["values"] = list(current.values)
        if current.constraints:
            out["constraints"] = {k: v for k, v in current.constraints}
        if current.annotation is not None:
            out["annotation"] = current.annotation.to_dict()
        return out

    return fold(node, _visit)


def node_from_dict(data: Any, path: str = "$") -> SchemaNode:
    """Inverse of node_to_dict. Object field order follows the mapping order."""
    if not isinstance(data, dict):
        raise SchemaIntrospectionFailure("schema node must be an object", path)
    kind = data.get("kind")
    if kind not in ALL_KINDS:
        raise SchemaIntrospectionFailure(f"Unknown schema kind: {kind!r}", path)
    constraints = data.get("constraints") or {}
    if not isinstance(constraints, dict):
        raise SchemaIntrospectionFailure("constraints must be an object", path)
    try:
        if kind == STRING:
            node = string(**constraints)
        elif kind == NUMBER:
            node = number(**constraints)
        elif kind == BOOLEAN:
            node = boolean()
        elif kind == ENUM:
            node = enum(*(data.get("values") or []))
        elif kind == OBJECT:
            raw_fields = data.get("fields") or {}
            if not isinstance(raw_fields, dict):
                raise SchemaIntrospectionFailure("fields must be an object", path)
            fields = [(name, node_from_dict(child, f"{path}.{name}")) for name, child in raw_fields.items()]
            required = data.get("required")
            if required is None:
                node = obj(fields)
            else:
                names = {name for name, _ in fields}
                node = replace(obj(fields), required=frozenset(n for n in required if n in names))
        elif kind == ARRAY:
            node = array(node_from_dict(data.get("element"), f"{path}[]"), **constraints)
        elif kind == DEFAULT:
            node = default(node_from_dict(data.get("inner"), path), data.get("default"))
        elif kind == OPTIONAL:
            node = optional(node_from_dict(data.get("inner"), path))
        else:
            node = nullable(node_from_dict(data.get("inner"), path))
    except TypeError as exc:
        raise SchemaIntrospectionFailure(f"Invalid constraints: {exc}", path) from exc
    except SchemaDefinitionError as exc:
        raise SchemaIntrospectionFailure(exc.message, exc.path or path) from exc
    ann = data.get("annotation")
    if ann is not None:
        if not isinstance(ann, dict):
            raise SchemaIntrospectionFailure("annotation must be an object", path)
        ann_kind = ann.get("kind")
        if ann_kind == USER_CONTEXT:
            node = replace(node, annotation=Annotation(USER_CONTEXT))
        elif ann_kind == ORGANIZATION_CONTEXT:
            node = replace(node, annotation=Annotation(ORGANIZATION_CONTEXT))
        elif ann_kind == FIELD_FROM and isinstance(ann.get("function"), str):
            node = replace(node, annotation=Annotation(FIELD_FROM, ann["function"]))
        else:
            raise SchemaIntrospectionFailure(f"Unknown annotation: {ann!r}", path)
    return node


# JSON Schema


def to_json_schema(node: SchemaNode) -> dict:
    def _visit(current: SchemaNode, children: List[Tuple[str, Any]]) -> dict:
        c = dict(current.constraints)
        if current.kind == STRING:
            out = {"type": "string"}
            for key, target in (("format", "format"), ("min_length", "minLength"), ("max_length", "maxLength"), ("pattern", "pattern")):
                if key in c:
                    out[target] = c[key]
            return out
        if current.kind == NUMBER:
            out = {"type": "integer" if c.get("integer") else "number"}
            if "minimum" in c:
                out["minimum"] = c["minimum"]
            if "maximum" in c:
                out["maximum"] = c["maximum"]
            return out
        if current.kind == BOOLEAN:
            return {"type": "boolean"}
        if current.kind == ENUM:
            out = {"enum": list(current.values)}
            if all(isinstance(v, str) for v in current.values):
                out["type"] = "string"
            return out
        if current.kind == OBJECT:
            out = {"type": "object", "properties": {name: child for name, child in children}}
            required = [name for name in current.field_names() if name in current.required]
            if required:
                out["required"] = required
            return out
        if current.kind == ARRAY:
            out = {"type": "array", "items": children[0][1]}
            if "min_items" in c:
                out["minItems"] = c["min_items"]
            if "max_items" in c:
                out["maxItems"] = c["max_items"]
            return out
        if current.kind == NULLABLE:
            return {"anyOf": [children[0][1], {"type": "null"}]}
        if current.kind == DEFAULT:
            return {**children[0][1], "default": _json_safe(current.default_value, "default")}
        return children[0][1]

    return fold(node, _visit)


# Value parsing


def _issue(code: str, message: str, path: str | None = None) -> Issue:
    return {"code": code, "message": message, "path": path}


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _parse(node: SchemaNode, value: Any, path: str, issues: List[Issue]) -> Any:
    kind = node.kind
    c = dict(node.constraints)
    if kind == OPTIONAL:
        return _parse(node.inner, value, path, issues)
    if kind == DEFAULT:
        return _parse(node.inner, value, path, issues)
    if kind == NULLABLE:
        if value is None:
            return None
        return _parse(node.inner, value, path, issues)
    if kind == STRING:
        if not isinstance(value, str):
            issues.append(_issue("SCHEMA_TYPE_MISMATCH", f"expected string, got {_type_name(value)}", path))
            return value
        if "min_length" in c and len(value) < c["min_length"]:
            issues.append(_issue("SCHEMA_CONSTRAINT", f"string shorter than {c['min_length']}", path))
        if "max_length" in c and len(value) > c["max_length"]:
            issues.append(_issue("SCHEMA_CONSTRAINT", f"string longer than {c['max_length']}", path))
        if "pattern" in c and not re.search(c["pattern"], value):
            issues.append(_issue("SCHEMA_CONSTRAINT", "string does not match pattern", path))
        fmt = c.get("format")
        if fmt and not _FORMAT_PATTERNS[fmt].match(value):
            issues.append(_issue("SCHEMA_FORMAT", f"string is not a valid {fmt}", path))
        return value
    if kind == NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.append(_issue("SCHEMA_TYPE_MISMATCH", f"expected number, got {_type_name(value)}", path))
            return value
        if isinstance(value, float) and not math.isfinite(value):
            issues.append(_issue("SCHEMA_TYPE_MISMATCH", "number must be finite", path))
            return value
        if c.get("integer") and value != int(value):
            issues.append(_issue("SCHEMA_TYPE_MISMATCH", f"expected integer, got {value}", path))
        if "minimum" in c and value < c["minimum"]:
            issues.append(_issue("SCHEMA_CONSTRAINT", f"number {value} is less than minimum {c['minimum']}", path))
        if "maximum" in c and value > c["maximum"]:
            issues.append(_issue("SCHEMA_CONSTRAINT", f"number {value} exceeds maximum {c['maximum']}", path))
        return value
    if kind == BOOLEAN:
        if not isinstance(value, bool):
            issues.append(_issue("SCHEMA_TYPE_MISMATCH", f"expected boolean, got {_type_name(value)}", path))
        return value
    if kind == ENUM:
        if not any(v == value and isinstance(v, bool) == isinstance(value, bool) for v in node.values):
            issues.append(_issue("SCHEMA_ENUM_INVALID", f"{value!r} is not one of {list(node.values)}", path))
        return value
    if kind == ARRAY:
        if not isinstance(value, (list, tuple)):
            issues.append(_issue("SCHEMA_TYPE_MISMATCH", f"expected array, got {_type_name(value)}", path))
            return value
        if "min_items" in c and len(value) < c["min_items"]:
            issues.append(_issue("SCHEMA_CONSTRAINT", f"array has fewer than {c['min_items']} items", path))
        if "max_items" in c and len(value) > c["max_items"]:
            issues.append(_issue("SCHEMA_CONSTRAINT", f"array has more than {c['max_items']} items", path))
        return [_parse(node.element, item, f"{path}[{idx}]", issues) for idx, item in enumerate(value)]
    if kind == OBJECT:
        if not isinstance(value, dict):
            issues.append(_issue("SCHEMA_TYPE_MISMATCH", f"expected object, got {_type_name(value)}", path))
            return value
        out = {}
        for name, child in node.fields:
            child_path = f"{path}.{name}"
            if name not in value:
                if child.kind == DEFAULT:
                    out[name] = _json_safe(child.default_value, child_path)
                elif name in node.required:
                    issues.append(_issue("SCHEMA_REQUIRED_MISSING", f"required field '{name}' is missing", child_path))
                continue
            out[name] = _parse(child, value[name], child_path, issues)
        return out
    raise SchemaIntrospectionFailure(f"Unknown schema kind: {kind}", path)


def parse_value(node: SchemaNode, value: Any) -> Tuple[Any, List[Issue]]:
    """Validate ``value``; return it with defaults applied and unknown keys dropped."""
    issues: List[Issue] = []
    parsed = _parse(node, value, "$", issues)
    return parsed, issues


def validate_value(node: SchemaNode, value: Any) -> List[Issue]:
    return parse_value(node, value)[1]
