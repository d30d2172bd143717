"""Canonicalization helpers for stable cross-platform hashing/signing."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from typing import Any

import rfc8785

from badge_engine.core.errors import ValidationError

PROOF_FIELD = "proof"


def canonicalize_jcs_bytes(data: Any) -> bytes:
    """Return RFC 8785 (JCS) canonical bytes."""
    try:
        canonical = rfc8785.dumps(data)
    except (rfc8785.CanonicalizationError, TypeError) as exc:
        raise ValidationError(f"document is not canonicalizable JSON: {exc}") from exc
    if isinstance(canonical, bytes):
        return canonical
    return str(canonical).encode("utf-8")


def strip_proof(document: Mapping[str, Any]) -> dict[str, Any]:
    """Shallow copy of ``document`` without its top-level proof."""
    return {key: value for key, value in document.items() if key != PROOF_FIELD}


def canonicalize(document: Mapping[str, Any]) -> bytes:
    """Canonical bytes of a credential with any embedded proof excluded.

    Two documents that differ only in key order or in their ``proof`` member
    produce identical output.
    """
    if not isinstance(document, Mapping):
        raise ValidationError("credential document must be a JSON object")
    return canonicalize_jcs_bytes(strip_proof(document))


def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()
