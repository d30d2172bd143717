"""Credential generations and the tagged union the builder returns."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

OB2_CONTEXT = "https://w3id.org/openbadges/v2"
VC_V2_CONTEXT = "https://www.w3.org/ns/credentials/v2"
VC_V1_CONTEXT = "https://www.w3.org/2018/credentials/v1"
OB3_CONTEXT = "https://purl.imsglobal.org/spec/ob/v3p0/context-3.0.3.json"
OB3_CONTEXT_PREFIX = "https://purl.imsglobal.org/spec/ob/v3p0/context"

OB3_CREDENTIAL_CONTEXT: tuple[str, ...] = (VC_V2_CONTEXT, OB3_CONTEXT)
OB3_CREDENTIAL_TYPES: frozenset[str] = frozenset({"OpenBadgeCredential", "AchievementCredential"})


class CredentialFormat(str, Enum):
    """Open Badges generation a document is expressed in."""

    OB2 = "ob2"
    OB3 = "ob3"


@dataclass(frozen=True, slots=True)
class LegacyCredential:
    """OB2 hosted assertion; trust comes from the hosting endpoint."""

    document: dict[str, Any]
    format: CredentialFormat = field(default=CredentialFormat.OB2, init=False)


@dataclass(frozen=True, slots=True)
class VerifiableCredential:
    """OB3 credential; carries an embedded proof once signed."""

    document: dict[str, Any]
    format: CredentialFormat = field(default=CredentialFormat.OB3, init=False)

    @property
    def signed(self) -> bool:
        return isinstance(self.document.get("proof"), Mapping)


BuiltCredential = LegacyCredential | VerifiableCredential


def declared_contexts(document: Mapping[str, Any]) -> list[str]:
    """``@context`` as a list of IRIs; embedded context objects are ignored."""
    raw = document.get("@context")
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, list):
        return [item for item in raw if isinstance(item, str)]
    return []


def classify(document: Mapping[str, Any]) -> CredentialFormat | None:
    """Decide which generation ``document`` declares itself to be.

    Returns ``None`` when neither the OB2 context nor a VC context combined
    with an OB 3.0 context is declared.
    """
    contexts = declared_contexts(document)
    if OB2_CONTEXT in contexts:
        return CredentialFormat.OB2
    has_vc = VC_V2_CONTEXT in contexts or VC_V1_CONTEXT in contexts
    has_ob3 = any(ctx.startswith(OB3_CONTEXT_PREFIX) for ctx in contexts)
    if has_vc and has_ob3:
        return CredentialFormat.OB3
    return None


def wrap(document: dict[str, Any]) -> BuiltCredential | None:
    """Wrap a raw document in its tagged-union member, or ``None`` if unknown."""
    fmt = classify(document)
    if fmt is CredentialFormat.OB2:
        return LegacyCredential(document)
    if fmt is CredentialFormat.OB3:
        return VerifiableCredential(document)
    return None


def document_issuer(document: Mapping[str, Any]) -> str | None:
    """Issuer IRI of an OB3 document (string form or Profile ``id``)."""
    issuer = document.get("issuer")
    if isinstance(issuer, str):
        return issuer
    if isinstance(issuer, Mapping) and isinstance(issuer.get("id"), str):
        return issuer["id"]
    return None
