"""Ontology change-control kernel utilities."""

from .canonical_json import (
    CanonicalJsonTypeError,
    UnsortedSetError,
    canonical_dumps,
    check_snapshot,
    pretty_dumps,
    snapshot_dumps,
    sorted_names,
)
from .ontology_hash import is_ontology_hash, ontology_hash

__all__ = [
    "CanonicalJsonTypeError",
    "UnsortedSetError",
    "canonical_dumps",
    "check_snapshot",
    "pretty_dumps",
    "snapshot_dumps",
    "sorted_names",
    "is_ontology_hash",
    "ontology_hash",
]
