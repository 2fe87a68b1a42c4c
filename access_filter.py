"""Per-principal function visibility, schema stripping and context injection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from ontology import FunctionDefinition, OntologyDefinition
from schema_tree import (
    ARRAY,
    CONTEXT_ANNOTATIONS,
    OBJECT,
    USER_CONTEXT,
    SchemaNode,
    annotation_of,
    map_fields,
    parse_value,
    unwrap,
)


logger = logging.getLogger("ontogate.access")


@dataclass
class AccessError(Exception):
    message: str

    code = "ACCESS_ERROR"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


class AccessDenied(AccessError):
    code = "ACCESS_DENIED"


class UnknownFunction(AccessError):
    code = "FUNCTION_UNKNOWN"


class InvalidAuthResult(AccessError):
    code = "AUTH_RESULT_INVALID"


@dataclass
class InputValidationError(AccessError):
    issues: List[dict] = field(default_factory=list)

    code = "INPUT_INVALID"


@dataclass(frozen=True)
class Principal:
    groups: Tuple[str, ...] = ()
    user: Any = None
    organization: Any = None

    def has_any(self, groups: Iterable[str]) -> bool:
        mine = set(self.groups)
        return any(group in mine for group in groups)


def normalize_auth_result(result: Any) -> Principal:
    """Accept a group list or a mapping ``{groups, user, organization}``."""
    if isinstance(result, Principal):
        return result
    if result is None:
        return Principal()
    if isinstance(result, Mapping):
        groups = result.get("groups") or []
        user = result.get("user")
        organization = result.get("organization")
    elif isinstance(result, (list, tuple, set, frozenset)):
        groups, user, organization = result, None, None
    else:
        raise InvalidAuthResult(f"auth hook returned unsupported value: {type(result).__name__}")
    if isinstance(groups, str) or not all(isinstance(g, str) for g in groups):
        raise InvalidAuthResult("auth groups must be a list of strings")
    return Principal(groups=tuple(sorted(set(groups))), user=user, organization=organization)


def reachable(ontology: OntologyDefinition, groups: Iterable[str]) -> List[FunctionDefinition]:
    """Functions callable by any of ``groups``, in name order."""
    wanted = set(groups)
    return [
        ontology.functions[name]
        for name in sorted(ontology.functions)
        if wanted.intersection(ontology.functions[name].access)
    ]


def _is_context_field(_name: str, child: SchemaNode) -> bool:
    ann = annotation_of(child)
    return ann is not None and ann.kind in CONTEXT_ANNOTATIONS


def exposed_schema(fn: FunctionDefinition) -> SchemaNode:
    """Inputs as callers see them: context fields removed at every depth."""
    return map_fields(fn.inputs, lambda name, child: not _is_context_field(name, child))


def _context_value(kind: str, principal: Principal) -> Any:
    return principal.user if kind == USER_CONTEXT else principal.organization


def _inject(fn_name: str, node: SchemaNode, value: Any, principal: Principal, path: str) -> Any:
    node = unwrap(node)
    if node.kind == ARRAY and node.element is not None:
        if not isinstance(value, (list, tuple)):
            return value
        return [_inject(fn_name, node.element, item, principal, f"{path}[{idx}]") for idx, item in enumerate(value)]
    if node.kind != OBJECT or not isinstance(value, Mapping):
        return value
    out: Dict[str, Any] = dict(value)
    for name, child in node.fields:
        child_path = f"{path}.{name}" if path else name
        ann = annotation_of(child)
        if ann is None or ann.kind not in CONTEXT_ANNOTATIONS:
            if name in out:
                out[name] = _inject(fn_name, child, out[name], principal, child_path)
            continue
        if name in out:
            logger.info("context_field_overridden function=%s field=%s", fn_name, child_path)
            out.pop(name)
        injected = _context_value(ann.kind, principal)
        if injected is not None:
            out[name] = injected
    return out


def inject_context(fn: FunctionDefinition, raw_args: Any, principal: Principal) -> Any:
    """Copy of ``raw_args`` with context fields taken from the principal.

    Walks the same fields ``exposed_schema`` strips, including those inside
    nested objects and array elements. Caller-supplied values for context
    fields are always dropped. A field is set only when the principal
    carries the matching value and its enclosing object was sent.
    """
    return _inject(fn.name, fn.inputs, raw_args, principal, "")



def prepare_call(ontology: OntologyDefinition, name: str, raw_args: Any, principal: Principal) -> Dict[str, Any]:
    """Check access, inject context and validate; return the resolver arguments."""
    fn = ontology.function(name)
    if fn is None:
        raise UnknownFunction(f"Unknown function: {name}")
    if not principal.has_any(fn.access):
        logger.warning("access_denied function=%s groups=%s", name, ",".join(principal.groups))
        raise AccessDenied(f'Access denied to function "{name}". Requires: {", ".join(fn.access)}')
    args = inject_context(fn, raw_args if raw_args is not None else {}, principal)
    parsed, issues = parse_value(fn.inputs, args)
    if issues:
        raise InputValidationError(f'Invalid input for function "{name}"', issues=issues)
    return parsed
