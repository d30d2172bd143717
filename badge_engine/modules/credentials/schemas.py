"""Pydantic schemas for engine records, Open Badges documents and verification results."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from badge_engine.modules.credentials.formats import (
    OB2_CONTEXT,
    OB3_CREDENTIAL_CONTEXT,
    VC_V2_CONTEXT,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_datetime(value: datetime) -> str:
    """XSD dateTime in UTC with a ``Z`` suffix, second precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    text = value.astimezone(UTC).isoformat(timespec="seconds")
    return text.replace("+00:00", "Z")


class RecipientType(str, Enum):
    """How a badge recipient is identified."""

    EMAIL = "email"
    URL = "url"
    TELEPHONE = "telephone"
    DID = "did"


# OB 3.0 IdentifierTypeEnum values per recipient type
OB3_IDENTITY_TYPES: dict[RecipientType, str] = {
    RecipientType.EMAIL: "emailAddress",
    RecipientType.URL: "url",
    RecipientType.TELEPHONE: "phoneNumber",
    RecipientType.DID: "identifier",
}

# OB 2.0 only knows email, url and telephone; DIDs are URIs
OB2_RECIPIENT_TYPES: dict[RecipientType, str] = {
    RecipientType.EMAIL: "email",
    RecipientType.URL: "url",
    RecipientType.TELEPHONE: "telephone",
    RecipientType.DID: "url",
}


# ---------------------------------------------------------------------------
# Storage records
# ---------------------------------------------------------------------------


class IssuerRecord(BaseModel):
    """Issuing organization profile."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    url: str
    email: str | None = None
    description: str | None = None
    image: str | None = None
    did: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class AchievementRecord(BaseModel):
    """Badge definition (BadgeClass / Achievement)."""

    id: UUID = Field(default_factory=uuid4)
    issuer_id: UUID
    name: str
    description: str
    criteria: str
    criteria_url: str | None = None
    image: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class AssertionRecord(BaseModel):
    """An issued credential; never deleted, only revoked."""

    id: UUID = Field(default_factory=uuid4)
    achievement_id: UUID
    issuer_id: UUID
    recipient_type: RecipientType = RecipientType.EMAIL
    recipient_identity: str
    recipient_hashed: bool = True
    recipient_salt: str | None = None
    issued_on: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    evidence_url: str | None = None
    narrative: str | None = None
    revoked: bool = False
    revocation_reason: str | None = None
    revoked_at: datetime | None = None
    status_index: int | None = None
    document: dict[str, Any] | None = None
    # set once issuance completed; unissued rows are never served or verified
    issued: bool = False

    model_config = ConfigDict(from_attributes=True)


class SigningKeyRecord(BaseModel):
    """An issuer's Ed25519 keypair with the private half encrypted at rest."""

    id: UUID = Field(default_factory=uuid4)
    issuer_id: UUID
    algorithm: Literal["Ed25519"] = "Ed25519"
    public_key_multibase: str
    verification_method: str
    encrypted_private_key: str = Field(repr=False)
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class StatusListRecord(BaseModel):
    """Per-issuer revocation bitstring plus its signed wrapping credential."""

    id: UUID = Field(default_factory=uuid4)
    issuer_id: UUID
    url: str
    bitstring: bytes = b""
    next_index: int = 0
    document: dict[str, Any] | None = None
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Data Integrity proof (eddsa-jcs-2022)
# ---------------------------------------------------------------------------


class DataIntegrityProof(BaseModel):
    """Embedded proof; ``@context`` mirrors the secured document's context."""

    context: list[str] | None = Field(default=None, alias="@context")
    type: str = "DataIntegrityProof"
    cryptosuite: str = "eddsa-jcs-2022"
    created: str
    verification_method: str = Field(alias="verificationMethod")
    proof_purpose: str = Field(alias="proofPurpose", default="assertionMethod")
    proof_value: str | None = Field(default=None, alias="proofValue")

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Open Badges 3.0 (OpenBadgeCredential)
# ---------------------------------------------------------------------------


class ImageObject(BaseModel):
    id: str
    type: str = "Image"


class Criteria(BaseModel):
    id: str | None = None
    narrative: str | None = None


class Achievement(BaseModel):
    id: str
    type: list[str] = ["Achievement"]
    name: str
    description: str
    criteria: Criteria
    image: ImageObject | None = None
    tag: list[str] | None = None


class IdentityObject(BaseModel):
    """OB3 recipient identifier, optionally salted and hashed."""

    type: str = "IdentityObject"
    hashed: bool
    identity_hash: str = Field(alias="identityHash")
    identity_type: str = Field(alias="identityType")
    salt: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class AchievementSubject(BaseModel):
    id: str | None = None
    type: list[str] = ["AchievementSubject"]
    identifier: list[IdentityObject] | None = None
    achievement: Achievement
    narrative: str | None = None


class Profile(BaseModel):
    id: str
    type: list[str] = ["Profile"]
    name: str
    url: str | None = None
    email: str | None = None
    description: str | None = None
    image: ImageObject | None = None


class Evidence(BaseModel):
    id: str
    type: list[str] = ["Evidence"]


class CredentialSchema(BaseModel):
    id: str
    type: str = "1EdTechJsonSchemaValidator2019"


class BitstringStatusListEntry(BaseModel):
    """``credentialStatus`` entry pointing at one bit of an issuer's list."""

    id: str
    type: str = "BitstringStatusListEntry"
    status_purpose: str = Field(default="revocation", alias="statusPurpose")
    status_list_index: str = Field(alias="statusListIndex")
    status_list_credential: str = Field(alias="statusListCredential")

    model_config = ConfigDict(populate_by_name=True)


class OpenBadgeCredential(BaseModel):
    """Open Badges 3.0 credential body (unsigned)."""

    context: list[str] = Field(alias="@context", default=list(OB3_CREDENTIAL_CONTEXT))
    id: str
    type: list[str] = ["VerifiableCredential", "OpenBadgeCredential"]
    issuer: Profile
    valid_from: str = Field(alias="validFrom")
    valid_until: str | None = Field(default=None, alias="validUntil")
    name: str
    credential_subject: AchievementSubject = Field(alias="credentialSubject")
    credential_status: BitstringStatusListEntry | None = Field(
        default=None, alias="credentialStatus"
    )
    credential_schema: list[CredentialSchema] = Field(alias="credentialSchema")
    evidence: list[Evidence] | None = None

    model_config = ConfigDict(populate_by_name=True)


class BitstringStatusList(BaseModel):
    id: str
    type: str = "BitstringStatusList"
    status_purpose: str = Field(default="revocation", alias="statusPurpose")
    encoded_list: str = Field(alias="encodedList")

    model_config = ConfigDict(populate_by_name=True)


class BitstringStatusListCredential(BaseModel):
    """W3C Bitstring Status List v1.0 wrapping credential (unsigned)."""

    context: list[str] = Field(alias="@context", default=[VC_V2_CONTEXT])
    id: str
    type: list[str] = ["VerifiableCredential", "BitstringStatusListCredential"]
    issuer: str
    valid_from: str = Field(alias="validFrom")
    credential_subject: BitstringStatusList = Field(alias="credentialSubject")

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Open Badges 2.0 (hosted Assertion)
# ---------------------------------------------------------------------------


class OB2IdentityObject(BaseModel):
    type: str
    identity: str
    hashed: bool
    salt: str | None = None


class OB2BadgeClass(BaseModel):
    id: str
    type: str = "BadgeClass"
    name: str
    description: str
    image: str | None = None
    criteria: Criteria
    issuer: str
    tags: list[str] | None = None


class OB2Assertion(BaseModel):
    """Open Badges 2.0 hosted assertion."""

    context: str = Field(alias="@context", default=OB2_CONTEXT)
    type: str = "Assertion"
    id: str
    recipient: OB2IdentityObject
    badge: OB2BadgeClass
    issued_on: str = Field(alias="issuedOn")
    expires: str | None = None
    verification: dict[str, str] = {"type": "HostedBadge"}
    evidence: str | None = None
    narrative: str | None = None
    revoked: bool | None = None
    revocation_reason: str | None = Field(default=None, alias="revocationReason")

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# DID Document (did:key, Multikey)
# ---------------------------------------------------------------------------


class VerificationMethod(BaseModel):
    """A single verification method in a DID Document or issuer profile."""

    id: str
    type: str = "Multikey"
    controller: str
    public_key_multibase: str = Field(alias="publicKeyMultibase")

    model_config = ConfigDict(populate_by_name=True)


class DIDDocument(BaseModel):
    """W3C DID Document structure."""

    context: list[str] = Field(
        alias="@context",
        default=[
            "https://www.w3.org/ns/did/v1",
            "https://w3id.org/security/multikey/v1",
        ],
    )
    id: str
    verification_method: list[VerificationMethod] = Field(alias="verificationMethod")
    authentication: list[str]
    assertion_method: list[str] = Field(alias="assertionMethod")

    model_config = ConfigDict(populate_by_name=True)


class IssuerProfileDocument(BaseModel):
    """Published OB3 issuer profile advertising its verification method."""

    context: list[str] = Field(alias="@context", default=list(OB3_CREDENTIAL_CONTEXT))
    id: str
    type: list[str] = ["Profile"]
    name: str
    url: str | None = None
    email: str | None = None
    description: str | None = None
    image: ImageObject | None = None
    verification_method: list[VerificationMethod] = Field(alias="verificationMethod")

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Verification result
# ---------------------------------------------------------------------------


class VerificationChecks(BaseModel):
    structure: bool
    signature: bool
    revocation: bool


class VerificationResult(BaseModel):
    """Outcome of verifying one document; ``valid`` iff every check passed."""

    valid: bool
    checks: VerificationChecks
    errors: list[str] = []

    @classmethod
    def from_checks(
        cls, *, structure: bool, signature: bool, revocation: bool, errors: list[str]
    ) -> VerificationResult:
        return cls(
            valid=structure and signature and revocation,
            checks=VerificationChecks(
                structure=structure, signature=signature, revocation=revocation
            ),
            errors=errors,
        )


