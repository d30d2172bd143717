"""Project an issued assertion into its OB2 or OB3 document."""

from __future__ import annotations

import hashlib
from typing import Any

from badge_engine.core.config import Settings
from badge_engine.core.errors import NotFoundError, ValidationError
from badge_engine.core.logging import get_logger
from badge_engine.modules.credentials.formats import (
    BuiltCredential,
    CredentialFormat,
    LegacyCredential,
    VerifiableCredential,
)
from badge_engine.modules.credentials.identifiers import ResourceUrls
from badge_engine.modules.credentials.repository import CredentialStore
from badge_engine.modules.credentials.schemas import (
    OB2_RECIPIENT_TYPES,
    OB3_IDENTITY_TYPES,
    Achievement,
    AchievementRecord,
    AchievementSubject,
    AssertionRecord,
    CredentialSchema,
    Criteria,
    Evidence,
    IdentityObject,
    ImageObject,
    IssuerRecord,
    OB2Assertion,
    OB2BadgeClass,
    OB2IdentityObject,
    OpenBadgeCredential,
    Profile,
    RecipientType,
    format_datetime,
)
from badge_engine.modules.credentials.status_list import StatusListManager

logger = get_logger(__name__)

HASH_PREFIX = "sha256$"


def normalize_identity(recipient_type: RecipientType, identity: str) -> str:
    identity = identity.strip()
    if recipient_type is RecipientType.EMAIL:
        return identity.lower()
    return identity


def hash_identity(identity: str, salt: str | None) -> str:
    """``sha256$`` + hex(SHA-256(identity || salt)), the Open Badges hashed form."""
    digest = hashlib.sha256((identity + (salt or "")).encode("utf-8")).hexdigest()
    return f"{HASH_PREFIX}{digest}"


class CredentialBuilder:
    """Render assertions as hosted OB2 assertions or unsigned OB3 credentials.

    Both projections draw achievement, recipient and issuance time from the
    same records. OB3 output carries a ``credentialStatus`` entry; when the
    assertion has no status index yet, one is allocated first.
    """

    def __init__(
        self,
        store: CredentialStore,
        status_lists: StatusListManager,
        urls: ResourceUrls,
        settings: Settings,
    ) -> None:
        self._store = store
        self._status_lists = status_lists
        self._urls = urls
        self._schema_url = settings.ob3_schema_url

    async def build(
        self,
        assertion: AssertionRecord,
        issuer: IssuerRecord,
        target_format: CredentialFormat,
    ) -> BuiltCredential:
        if assertion.issuer_id != issuer.id:
            raise ValidationError(
                f"assertion {assertion.id} was not issued by issuer {issuer.id}"
            )
        achievement = await self._store.get_achievement(assertion.achievement_id)
        if achievement is None:
            raise NotFoundError(f"achievement {assertion.achievement_id} not found")
        if achievement.issuer_id != issuer.id:
            raise ValidationError(
                f"achievement {achievement.id} is not defined by issuer {issuer.id}"
            )

        if target_format is CredentialFormat.OB2:
            return LegacyCredential(self._build_ob2(assertion, issuer, achievement))
        if target_format is CredentialFormat.OB3:
            index = assertion.status_index
            if index is None:
                index = await self._allocate(assertion)
            return VerifiableCredential(self._build_ob3(assertion, issuer, achievement, index))
        raise ValidationError(f"unsupported credential format {target_format!r}")

    async def _allocate(self, assertion: AssertionRecord) -> int:
        persisted = await self._store.get_assertion(assertion.id)
        if persisted is None:
            # nothing to attach the index to; it stays reserved but unowned
            logger.warning("status_index_for_unpersisted_assertion", assertion_id=str(assertion.id))
            return await self._status_lists.allocate_index(assertion.issuer_id)
        return await self._status_lists.allocate_index(
            assertion.issuer_id, credential_id=assertion.id
        )

    # ------------------------------------------------------------------
    # OB2
    # ------------------------------------------------------------------

    def _build_ob2(
        self,
        assertion: AssertionRecord,
        issuer: IssuerRecord,
        achievement: AchievementRecord,
    ) -> dict[str, Any]:
        identity = normalize_identity(assertion.recipient_type, assertion.recipient_identity)
        if assertion.recipient_hashed:
            identity = hash_identity(identity, assertion.recipient_salt)

        body = OB2Assertion(
            id=self._urls.assertion(assertion.id),
            recipient=OB2IdentityObject(
                type=OB2_RECIPIENT_TYPES[assertion.recipient_type],
                identity=identity,
                hashed=assertion.recipient_hashed,
                salt=assertion.recipient_salt if assertion.recipient_hashed else None,
            ),
            badge=OB2BadgeClass(
                id=self._urls.badge_class(achievement.id),
                name=achievement.name,
                description=achievement.description,
                image=achievement.image,
                criteria=Criteria(id=achievement.criteria_url, narrative=achievement.criteria),
                # hosted verification needs a dereferenceable HTTP profile, never a DID
                issuer=self._urls.issuer(issuer.id),
                tags=achievement.tags or None,
            ),
            issued_on=format_datetime(assertion.issued_on),
            expires=format_datetime(assertion.expires_at) if assertion.expires_at else None,
            evidence=assertion.evidence_url,
            narrative=assertion.narrative,
            revoked=True if assertion.revoked else None,
            revocation_reason=assertion.revocation_reason if assertion.revoked else None,
        )
        return body.model_dump(by_alias=True, exclude_none=True)

    # ------------------------------------------------------------------
    # OB3
    # ------------------------------------------------------------------

    def _build_ob3(
        self,
        assertion: AssertionRecord,
        issuer: IssuerRecord,
        achievement: AchievementRecord,
        status_index: int,
    ) -> dict[str, Any]:
        body = OpenBadgeCredential(
            id=self._urls.assertion(assertion.id),
            issuer=Profile(
                id=self._urls.issuer_iri(issuer),
                name=issuer.name,
                url=issuer.url,
                email=issuer.email,
                description=issuer.description,
                image=ImageObject(id=issuer.image) if issuer.image else None,
            ),
            valid_from=format_datetime(assertion.issued_on),
            valid_until=format_datetime(assertion.expires_at) if assertion.expires_at else None,
            name=achievement.name,
            credential_subject=self._subject(assertion, achievement),
            credential_status=self._status_lists.status_entry(issuer.id, status_index),
            credential_schema=[CredentialSchema(id=self._schema_url)],
            evidence=[Evidence(id=assertion.evidence_url)] if assertion.evidence_url else None,
        )
        return body.model_dump(by_alias=True, exclude_none=True)

    def _subject(
        self, assertion: AssertionRecord, achievement: AchievementRecord
    ) -> AchievementSubject:
        identity = normalize_identity(assertion.recipient_type, assertion.recipient_identity)
        subject_id = None
        if not assertion.recipient_hashed and assertion.recipient_type in (
            RecipientType.DID,
            RecipientType.URL,
        ):
            subject_id = identity

        identifier = IdentityObject(
            hashed=assertion.recipient_hashed,
            identity_hash=(
                hash_identity(identity, assertion.recipient_salt)
                if assertion.recipient_hashed
                else identity
            ),
            identity_type=OB3_IDENTITY_TYPES[assertion.recipient_type],
            salt=assertion.recipient_salt if assertion.recipient_hashed else None,
        )
        return AchievementSubject(
            id=subject_id,
            identifier=[identifier],
            achievement=Achievement(
                id=self._urls.achievement(achievement.id),
                name=achievement.name,
                description=achievement.description,
                criteria=Criteria(id=achievement.criteria_url, narrative=achievement.criteria),
                image=ImageObject(id=achievement.image) if achievement.image else None,
                tag=achievement.tags or None,
            ),
            narrative=assertion.narrative,
        )
