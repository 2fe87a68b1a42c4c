"""Locate an OntologyDefinition from a CLI target."""

from __future__ import annotations

import importlib
import importlib.util
import json
import os
import sys
from dataclasses import dataclass
from typing import Any

from ontology import OntologyDefinition, define_ontology
from schema_tree import SchemaIntrospectionFailure, node_from_dict


DEFAULT_ATTRIBUTE = "ontology"


@dataclass
class OntologyLoadError(Exception):
    message: str
    target: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (target={self.target})" if self.target else self.message


def ontology_from_dict(data: Any) -> OntologyDefinition:
    """Build an ontology from its declarative JSON form.

    Function ``inputs``/``outputs`` use the structural schema form; ``resolver``
    is kept as an opaque string.
    """
    if not isinstance(data, dict):
        raise OntologyLoadError("ontology document must be a JSON object")
    functions = {}
    for name, spec in (data.get("functions") or {}).items():
        if not isinstance(spec, dict):
            raise OntologyLoadError(f"function {name} must be an object")
        try:
            functions[name] = {
                **spec,
                "inputs": node_from_dict(spec.get("inputs"), f"functions.{name}.inputs"),
                "outputs": (
                    node_from_dict(spec["outputs"], f"functions.{name}.outputs")
                    if spec.get("outputs") is not None
                    else None
                ),
            }
        except SchemaIntrospectionFailure as exc:
            raise OntologyLoadError(str(exc)) from exc
    return define_ontology(
        name=data.get("name", ""),
        functions=functions,
        access_groups=data.get("access_groups") or {},
        entities=data.get("entities") or {},
        environments=data.get("environments") or {},
    )


def _import_module(module_ref: str, target: str):
    if module_ref.endswith(".py") or os.sep in module_ref:
        path = os.path.abspath(module_ref)
        if not os.path.exists(path):
            raise OntologyLoadError("ontology file not found", target)
        module_name = os.path.splitext(os.path.basename(path))[0]
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise OntologyLoadError("cannot import ontology file", target)
        module = importlib.util.module_from_spec(spec)
        sys.path.insert(0, os.path.dirname(path))
        try:
            spec.loader.exec_module(module)
        finally:
            sys.path.remove(os.path.dirname(path))
        return module
    try:
        return importlib.import_module(module_ref)
    except ImportError as exc:
        raise OntologyLoadError(f"cannot import module: {exc}", target) from exc


def load_ontology(target: str) -> OntologyDefinition:
    """Load ``module:attr``, ``path/to/file.py:attr`` or a ``.json`` document.

    The attribute defaults to ``ontology``. A callable attribute is called
    with no arguments and must return an OntologyDefinition.
    """
    if not target or not target.strip():
        raise OntologyLoadError("no ontology target given")
    target = target.strip()
    if target.endswith(".json"):
        try:
            with open(target, "r", encoding="utf-8") as handle:
                return ontology_from_dict(json.load(handle))
        except OSError as exc:
            raise OntologyLoadError(f"cannot read ontology document: {exc}", target) from exc
        except ValueError as exc:
            raise OntologyLoadError(f"invalid JSON: {exc}", target) from exc
    module_ref, _, attr = target.partition(":")
    module = _import_module(module_ref, target)
    value = getattr(module, attr or DEFAULT_ATTRIBUTE, None)
    if value is None:
        raise OntologyLoadError(f"module has no attribute {attr or DEFAULT_ATTRIBUTE!r}", target)
    if callable(value) and not isinstance(value, OntologyDefinition):
        value = value()
    if not isinstance(value, OntologyDefinition):
        raise OntologyLoadError(f"expected an OntologyDefinition, got {type(value).__name__}", target)
    return value
