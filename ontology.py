"""Ontology definition: access groups, entities and function declarations."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

import schema_tree
from field_references import extract_references
from schema_tree import SchemaIntrospectionFailure, SchemaNode


@dataclass
class OntologyValidationError(Exception):
    message: str
    path: str | None = None

    code = "ONTOLOGY_INVALID"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class UnknownAccessGroupReference(OntologyValidationError):
    code = "ACCESS_GROUP_UNKNOWN"


class UnknownEntityReference(OntologyValidationError):
    code = "ENTITY_UNKNOWN"


class UnknownFieldFromReference(OntologyValidationError):
    code = "FIELD_FROM_UNKNOWN"


class EmptyAccessList(OntologyValidationError):
    code = "ACCESS_EMPTY"


class DuplicateFunctionName(OntologyValidationError):
    code = "FUNCTION_DUPLICATE"


class InvalidUiConfig(OntologyValidationError):
    code = "UI_CONFIG_INVALID"


@dataclass(frozen=True)
class AccessGroup:
    name: str
    description: str = ""


@dataclass(frozen=True)
class DomainEntity:
    name: str
    description: str = ""


@dataclass(frozen=True)
class FunctionDefinition:
    name: str
    description: str
    access: Tuple[str, ...]
    entities: Tuple[str, ...]
    inputs: SchemaNode
    outputs: SchemaNode | None = None
    resolver: Any = field(default=None, compare=False)
    ui: Any = field(default=None, compare=False)


@dataclass(frozen=True)
class OntologyDefinition:
    name: str
    functions: Mapping[str, FunctionDefinition]
    access_groups: Mapping[str, AccessGroup]
    entities: Mapping[str, DomainEntity] = field(default_factory=lambda: MappingProxyType({}))
    environments: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    auth: Callable[..., Any] | None = field(default=None, compare=False)

    def function(self, name: str) -> FunctionDefinition | None:
        return self.functions.get(name)

    def function_names(self) -> List[str]:
        return sorted(self.functions)


def _described(kind: type, name: str, raw: Any, path: str):
    if isinstance(raw, kind):
        return raw if raw.name == name else kind(name=name, description=raw.description)
    if raw is None:
        return kind(name=name)
    if isinstance(raw, str):
        return kind(name=name, description=raw)
    if isinstance(raw, Mapping):
        description = raw.get("description", "")
        if not isinstance(description, str):
            raise OntologyValidationError("description must be a string", f"{path}.description")
        return kind(name=name, description=description)
    raise OntologyValidationError(f"Invalid {kind.__name__} declaration", path)


def _named_items(raw: Any, path: str) -> List[Tuple[str, Any]]:
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        return list(raw.items())
    if isinstance(raw, (list, tuple)):
        items = []
        for idx, item in enumerate(raw):
            name = getattr(item, "name", None)
            if name is None and isinstance(item, Mapping):
                name = item.get("name")
            if not isinstance(name, str):
                raise OntologyValidationError("declaration is missing a name", f"{path}[{idx}]")
            items.append((name, item))
        return items
    raise OntologyValidationError("expected a mapping or a list", path)


def _as_names(raw: Any, path: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str) or not isinstance(raw, Iterable):
        raise OntologyValidationError("expected a list of names", path)
    names = tuple(raw)
    for idx, name in enumerate(names):
        if not isinstance(name, str) or not name:
            raise OntologyValidationError("names must be non-empty strings", f"{path}[{idx}]")
    return names


def _function(name: str, raw: Any, path: str) -> FunctionDefinition:
    if isinstance(raw, FunctionDefinition):
        spec: Dict[str, Any] = {
            "description": raw.description,
            "access": raw.access,
            "entities": raw.entities,
            "inputs": raw.inputs,
            "outputs": raw.outputs,
            "resolver": raw.resolver,
            "ui": raw.ui,
        }
    elif isinstance(raw, Mapping):
        spec = dict(raw)
    else:
        raise OntologyValidationError("function declaration must be a mapping", path)
    description = spec.get("description", "")
    if not isinstance(description, str):
        raise OntologyValidationError("description must be a string", f"{path}.description")
    if not isinstance(spec.get("inputs"), SchemaNode):
        raise OntologyValidationError("inputs must be a schema node", f"{path}.inputs")
    outputs = spec.get("outputs")
    if outputs is not None and not isinstance(outputs, SchemaNode):
        raise OntologyValidationError("outputs must be a schema node when given", f"{path}.outputs")
    ui = spec.get("ui")
    if ui is not None and not isinstance(ui, (bool, Mapping)):
        raise InvalidUiConfig("ui must be a boolean or a mapping", f"{path}.ui")
    return FunctionDefinition(
        name=name,
        description=description,
        access=_as_names(spec.get("access"), f"{path}.access"),
        entities=_as_names(spec.get("entities"), f"{path}.entities"),
        inputs=spec["inputs"],
        outputs=outputs,
        resolver=spec.get("resolver"),
        ui=MappingProxyType(dict(ui)) if isinstance(ui, Mapping) else ui,
    )


def _output_row_fields(fn: FunctionDefinition, path: str) -> Dict[str, str]:
    if fn.outputs is None:
        raise InvalidUiConfig("ui config requires an outputs schema", path)
    outputs = schema_tree.unwrap(fn.outputs)
    if outputs.kind != schema_tree.ARRAY or outputs.element is None:
        raise InvalidUiConfig("ui config requires outputs to be an array of objects, got: non-array schema", path)
    row = schema_tree.unwrap(outputs.element)
    if row.kind != schema_tree.OBJECT:
        raise InvalidUiConfig("ui config requires outputs to be an array of objects, got: array of non-objects", path)
    kinds = {}
    for name, child in row.fields:
        kind = schema_tree.unwrap(child).kind
        kinds[name] = schema_tree.STRING if kind == schema_tree.ENUM else kind
    return kinds


def _validate_ui(fn: FunctionDefinition, path: str) -> None:
    if not isinstance(fn.ui, Mapping):
        return
    fields = _output_row_fields(fn, path)
    available = ", ".join(fields)
    x_axis = fn.ui.get("x_axis")
    if x_axis:
        if x_axis not in fields:
            raise InvalidUiConfig(f"ui.x_axis '{x_axis}' not found in outputs schema. Available: {available}", f"{path}.x_axis")
        if fields[x_axis] not in (schema_tree.STRING, schema_tree.NUMBER):
            raise InvalidUiConfig(
                f"ui.x_axis '{x_axis}' must be a string or number field, got: {fields[x_axis]}", f"{path}.x_axis"
            )
    for key in ("y_axis", "left_y_axis", "right_y_axis"):
        axes = fn.ui.get(key)
        if not axes:
            continue
        for axis in [axes] if isinstance(axes, str) else list(axes):
            if axis not in fields:
                raise InvalidUiConfig(f"ui.{key} '{axis}' not found in outputs schema. Available: {available}", f"{path}.{key}")
            if fields[axis] != schema_tree.NUMBER:
                raise InvalidUiConfig(f"ui.{key} '{axis}' must be a numeric field, got: {fields[axis]}", f"{path}.{key}")
    if schema_tree.NUMBER not in fields.values():
        raise InvalidUiConfig(f"ui config requires at least one numeric field in outputs, found: {available}", path)


def define_ontology(
    name: str,
    functions: Any,
    access_groups: Any,
    entities: Any = None,
    environments: Mapping[str, Any] | None = None,
    auth: Callable[..., Any] | None = None,
) -> OntologyDefinition:
    """Validate a declaration and return an immutable OntologyDefinition.

    ``functions`` is a mapping of name to FunctionDefinition (or a mapping with
    the same keys), or a list of FunctionDefinition. Access groups and
    entities map a name to a description, a mapping with ``description``, or
    an AccessGroup / DomainEntity.
    """
    if not isinstance(name, str) or not name:
        raise OntologyValidationError("ontology name must be a non-empty string", "name")

    groups: Dict[str, AccessGroup] = {}
    for group_name, raw in _named_items(access_groups, "access_groups"):
        groups[group_name] = _described(AccessGroup, group_name, raw, f"access_groups.{group_name}")
    known_entities: Dict[str, DomainEntity] = {}
    for entity_name, raw in _named_items(entities, "entities"):
        known_entities[entity_name] = _described(DomainEntity, entity_name, raw, f"entities.{entity_name}")

    declared: Dict[str, FunctionDefinition] = {}
    for fn_name, raw in _named_items(functions, "functions"):
        path = f"functions.{fn_name}"
        if not isinstance(fn_name, str) or not fn_name:
            raise OntologyValidationError("function names must be non-empty strings", "functions")
        if fn_name in declared:
            raise DuplicateFunctionName(f"Function '{fn_name}' is declared more than once", path)
        declared[fn_name] = _function(fn_name, raw, path)

    for fn_name, fn in declared.items():
        path = f"functions.{fn_name}"
        if not fn.access:
            raise EmptyAccessList(f"Function '{fn_name}' must grant at least one access group", f"{path}.access")
        for group in fn.access:
            if group not in groups:
                raise UnknownAccessGroupReference(
                    f"Function '{fn_name}' references unknown access group '{group}'", f"{path}.access"
                )
        for entity in fn.entities:
            if entity not in known_entities:
                raise UnknownEntityReference(
                    f"Function '{fn_name}' references unknown entity '{entity}'", f"{path}.entities"
                )
        try:
            references = extract_references(fn.inputs)
        except SchemaIntrospectionFailure:
            # canonicalization degrades this schema and logs it
            references = []
        for ref in references:
            if ref["function_name"] not in declared:
                raise UnknownFieldFromReference(
                    f"Function '{fn_name}' field '{ref['path']}' references unknown function '{ref['function_name']}'",
                    f"{path}.inputs.{ref['path']}",
                )
        _validate_ui(fn, f"{path}.ui")

    return OntologyDefinition(
        name=name,
        functions=MappingProxyType({k: declared[k] for k in sorted(declared)}),
        access_groups=MappingProxyType({k: groups[k] for k in sorted(groups)}),
        entities=MappingProxyType({k: known_entities[k] for k in sorted(known_entities)}),
        environments=MappingProxyType(dict(environments or {})),
        auth=auth,
    )
