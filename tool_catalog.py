"""Tool listing for a principal."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from access_filter import Principal, exposed_schema, reachable
from field_references import extract_references
from ontology import FunctionDefinition, OntologyDefinition
from schema_tree import SchemaIntrospectionFailure, to_json_schema


logger = logging.getLogger("ontogate.access")

EMPTY_INPUT_SCHEMA = {"type": "object", "properties": {}}


def describe_tool(fn: FunctionDefinition) -> Dict[str, Any]:
    try:
        input_schema = to_json_schema(exposed_schema(fn))
    except SchemaIntrospectionFailure as exc:
        logger.warning("tool_input_schema_failed function=%s error=%s", fn.name, exc)
        input_schema = dict(EMPTY_INPUT_SCHEMA)
    output_schema = None
    if fn.outputs is not None:
        try:
            output_schema = to_json_schema(fn.outputs)
        except SchemaIntrospectionFailure as exc:
            logger.warning("tool_output_schema_failed function=%s error=%s", fn.name, exc)
    try:
        references = extract_references(fn.inputs)
    except SchemaIntrospectionFailure:
        references = []
    return {
        "name": fn.name,
        "description": fn.description,
        "access": list(fn.access),
        "entities": list(fn.entities),
        "input_schema": input_schema,
        "output_schema": output_schema,
        "field_references": references,
    }


def list_tools(ontology: OntologyDefinition, principal: Principal) -> List[Dict[str, Any]]:
    return [describe_tool(fn) for fn in reachable(ontology, principal.groups)]
