"""Deterministic snapshot of an ontology's security-relevant surface.

The snapshot holds function names, descriptions, access lists, entities,
input/output shapes, field references and context-injection flags. Resolvers,
environments, the auth hook and ui hints are excluded, so implementation code
can change without touching the fingerprint.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from field_references import extract_references
from ontogate.canonical_json import sorted_names
from ontogate.ontology_hash import ontology_hash
from ontology import FunctionDefinition, OntologyDefinition
from schema_tree import (
    ORGANIZATION_CONTEXT,
    USER_CONTEXT,
    SchemaIntrospectionFailure,
    context_field_names,
    node_to_dict,
)


logger = logging.getLogger("ontogate.canonicalize")

OPAQUE_SCHEMA = {"kind": "opaque"}

Snapshot = Dict[str, Any]


def _serialize(fn: FunctionDefinition, which: str) -> dict | None:
    node = getattr(fn, which)
    if node is None:
        return None
    try:
        return node_to_dict(node)
    except SchemaIntrospectionFailure as exc:
        logger.warning("schema_introspection_failed function=%s schema=%s error=%s", fn.name, which, exc)
        return dict(OPAQUE_SCHEMA)


def function_shape(fn: FunctionDefinition) -> dict:
    try:
        references = extract_references(fn.inputs)
    except SchemaIntrospectionFailure as exc:
        logger.warning("field_reference_extraction_failed function=%s error=%s", fn.name, exc)
        references = []
    return {
        "description": fn.description,
        "access": sorted_names(fn.access, f"$.functions.{fn.name}.access"),
        "entities": sorted_names(fn.entities, f"$.functions.{fn.name}.entities"),
        "inputs": _serialize(fn, "inputs"),
        "outputs": _serialize(fn, "outputs"),
        "field_references": references,
        "uses_user_context": bool(context_field_names(fn.inputs, [USER_CONTEXT])),
        "uses_organization_context": bool(context_field_names(fn.inputs, [ORGANIZATION_CONTEXT])),
    }


def canonicalize(ontology: OntologyDefinition) -> Snapshot:
    return {
        "name": ontology.name,
        "access_groups": sorted_names(ontology.access_groups, "$.access_groups"),
        "entities": sorted_names(ontology.entities, "$.entities"),
        "functions": {name: function_shape(ontology.functions[name]) for name in sorted(ontology.functions)},
    }


def empty_snapshot(name: str = "") -> Snapshot:
    return {"name": name, "access_groups": [], "entities": [], "functions": {}}


def compute_ontology_hash(ontology: OntologyDefinition) -> Tuple[Snapshot, str]:
    snapshot = canonicalize(ontology)
    return snapshot, ontology_hash(snapshot)
