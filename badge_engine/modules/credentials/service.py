"""Issuance, revocation and publication facade over the credential components."""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any
from uuid import UUID

from badge_engine.core.config import Settings, get_settings
from badge_engine.core.encryption import KeyMaterialEncryptor
from badge_engine.core.errors import BadgeEngineError, NotFoundError, ValidationError
from badge_engine.core.logging import get_logger
from badge_engine.modules.credentials.builder import CredentialBuilder
from badge_engine.modules.credentials.did import DIDService
from badge_engine.modules.credentials.formats import (
    BuiltCredential,
    CredentialFormat,
    VerifiableCredential,
)
from badge_engine.modules.credentials.identifiers import ResourceUrls
from badge_engine.modules.credentials.keys import IssuerKey, KeyManager
from badge_engine.modules.credentials.proofs import ProofEngine
from badge_engine.modules.credentials.repository import CredentialStore
from badge_engine.modules.credentials.schemas import (
    AssertionRecord,
    IssuerRecord,
    RecipientType,
    VerificationResult,
    utcnow,
)
from badge_engine.modules.credentials.status_list import StatusListManager
from badge_engine.modules.credentials.verification import VerificationOrchestrator

logger = get_logger(__name__)


class CredentialService:
    """Issue, render, revoke and verify Open Badges credentials.

    Every issued assertion holds a status list index, whichever format it was
    first issued in, so that it can later be rendered as OB3 and revoked
    through the issuer's list.
    """

    def __init__(
        self,
        store: CredentialStore,
        encryptor: KeyMaterialEncryptor,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self.urls = ResourceUrls(self._settings.public_base_url)
        self.keys = KeyManager(store, encryptor)
        self.proofs = ProofEngine(self.keys, store, self.urls)
        self.status_lists = StatusListManager(
            store, self.keys, self.proofs, self.urls, self._settings
        )
        self.builder = CredentialBuilder(store, self.status_lists, self.urls, self._settings)
        self.verifier = VerificationOrchestrator(
            store, self.proofs, self.status_lists, self.builder
        )
        self.dids = DIDService(store, self.keys, self.urls)

    @classmethod
    def from_settings(
        cls, store: CredentialStore, settings: Settings | None = None
    ) -> CredentialService:
        settings = settings or get_settings()
        return cls(store, KeyMaterialEncryptor.from_settings(settings), settings)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def issue(
        self,
        *,
        issuer_id: UUID,
        achievement_id: UUID,
        recipient_identity: str,
        recipient_type: RecipientType = RecipientType.EMAIL,
        hashed: bool = True,
        target_format: CredentialFormat = CredentialFormat.OB3,
        issued_on: datetime | None = None,
        expires_at: datetime | None = None,
        evidence_url: str | None = None,
        narrative: str | None = None,
    ) -> BuiltCredential:
        """Create, number and render a new assertion.

        The assertion row and its status index commit together; the row only
        becomes visible once rendering (and, for OB3, signing) succeeded.
        OB3 output is signed and the signed document is persisted with the
        assertion; OB2 output is the hosted assertion.
        """
        if not recipient_identity.strip():
            raise ValidationError("recipient identity must not be empty")
        issued_on = issued_on or utcnow()
        if expires_at is not None and expires_at <= issued_on:
            raise ValidationError("expires_at must be later than the issuance time")

        issuer = await self._require_issuer(issuer_id)
        achievement = await self._store.get_achievement(achievement_id)
        if achievement is None:
            raise NotFoundError(f"achievement {achievement_id} not found")
        if achievement.issuer_id != issuer_id:
            raise ValidationError(
                f"achievement {achievement_id} is not defined by issuer {issuer_id}"
            )

        record = AssertionRecord(
            achievement_id=achievement_id,
            issuer_id=issuer_id,
            recipient_type=recipient_type,
            recipient_identity=recipient_identity,
            recipient_hashed=hashed,
            recipient_salt=secrets.token_hex(self._settings.recipient_salt_bytes)
            if hashed
            else None,
            issued_on=issued_on,
            expires_at=expires_at,
            evidence_url=evidence_url,
            narrative=narrative,
        )
        record = await self.status_lists.register_assertion(record)
        try:
            built = await self._render(record, issuer, target_format)
        except BadgeEngineError as exc:
            logger.warning(
                "credential_issuance_failed",
                assertion_id=str(record.id),
                issuer_id=str(issuer_id),
                status_index=record.status_index,
                error=str(exc),
            )
            raise
        if built.format is not CredentialFormat.OB3:
            await self._store.publish_assertion(record.id)
        logger.info(
            "credential_issued",
            assertion_id=str(record.id),
            issuer_id=str(issuer_id),
            achievement_id=str(achievement_id),
            format=target_format.value,
            status_index=record.status_index,
        )
        return built

    async def render(
        self, assertion_id: UUID, target_format: CredentialFormat
    ) -> BuiltCredential:
        """Current document for an assertion; OB3 is signed once and then reused."""
        assertion = await self._require_assertion(assertion_id)
        issuer = await self._require_issuer(assertion.issuer_id)
        if target_format is CredentialFormat.OB3 and assertion.document is not None:
            return VerifiableCredential(assertion.document)
        return await self._render(assertion, issuer, target_format)

    async def _render(
        self,
        assertion: AssertionRecord,
        issuer: IssuerRecord,
        target_format: CredentialFormat,
    ) -> BuiltCredential:
        built = await self.builder.build(assertion, issuer, target_format)
        if isinstance(built, VerifiableCredential):
            signed = await self.proofs.sign(built.document, issuer.id)
            await self._store.publish_assertion(assertion.id, signed)
            return VerifiableCredential(signed)
        return built

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def revoke(self, assertion_id: UUID, reason: str | None = None) -> dict[str, Any]:
        """Revoke an assertion; returns the re-signed status list credential."""
        return await self._set_revoked(assertion_id, True, reason)

    async def reinstate(self, assertion_id: UUID) -> dict[str, Any]:
        return await self._set_revoked(assertion_id, False, None)

    async def _set_revoked(
        self, assertion_id: UUID, revoked: bool, reason: str | None
    ) -> dict[str, Any]:
        assertion = await self._require_assertion(assertion_id)
        index = assertion.status_index
        if index is None:
            index = await self.status_lists.allocate_index(
                assertion.issuer_id, credential_id=assertion.id
            )
        document = await self.status_lists.set_revoked(
            assertion.issuer_id, index, revoked, reason
        )
        logger.info(
            "credential_revoked" if revoked else "credential_reinstated",
            assertion_id=str(assertion_id),
            issuer_id=str(assertion.issuer_id),
            status_index=index,
            reason=reason,
        )
        return document

    # ------------------------------------------------------------------
    # Verification and publication
    # ------------------------------------------------------------------

    async def verify(self, document: Any) -> VerificationResult:
        return await self.verifier.verify_document(document)

    async def verify_assertion(
        self, assertion_id: UUID, target_format: CredentialFormat | None = None
    ) -> VerificationResult:
        return await self.verifier.verify_reference(assertion_id, target_format)

    async def get_status_list_credential(self, issuer_id: UUID) -> dict[str, Any]:
        return await self.status_lists.get_status_list_credential(issuer_id)

    async def issuer_profile(self, issuer_id: UUID) -> dict[str, Any]:
        profile = await self.dids.generate_issuer_profile(issuer_id)
        return profile.model_dump(by_alias=True, exclude_none=True)

    async def did_document(self, issuer_id: UUID) -> dict[str, Any]:
        document = await self.dids.generate_did_document(issuer_id)
        return document.model_dump(by_alias=True)

    async def rotate_issuer_key(self, issuer_id: UUID) -> IssuerKey:
        """Replace the issuer's signing key.

        Credentials signed earlier keep verifying through their embedded
        ``did:key`` method; new signatures, list re-signs included, use the
        new key.
        """
        await self._require_issuer(issuer_id)
        return await self.keys.rotate_key(issuer_id)

    async def _require_issuer(self, issuer_id: UUID) -> IssuerRecord:
        issuer = await self._store.get_issuer(issuer_id)
        if issuer is None:
            raise NotFoundError(f"issuer {issuer_id} not found")
        return issuer

    async def _require_assertion(self, assertion_id: UUID) -> AssertionRecord:
        assertion = await self._store.get_assertion(assertion_id)
        if assertion is None or not assertion.issued:
            raise NotFoundError(f"assertion {assertion_id} not found")
        return assertion
