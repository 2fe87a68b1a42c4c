"""Ontology fingerprint utilities."""

from __future__ import annotations

import hashlib
import re
from typing import Any

from .canonical_json import snapshot_dumps


_HASH_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


def ontology_hash(snapshot: Any) -> str:
    """Return the canonical SHA-256 fingerprint for an ontology snapshot.

    Raises UnsortedSetError when a set-like name list is not in canonical form.
    """
    data = snapshot_dumps(snapshot).encode("utf-8")
    digest = hashlib.sha256(data).hexdigest()
    return f"sha256:{digest}"


def is_ontology_hash(value: Any) -> bool:
    return isinstance(value, str) and bool(_HASH_RE.match(value))
