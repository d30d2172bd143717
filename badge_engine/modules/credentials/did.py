"""DID Document and issuer profile generation for ``did:key`` issuer keys."""

from __future__ import annotations

from uuid import UUID

from badge_engine.core.crypto.multibase import decode_ed25519_public_key
from badge_engine.core.errors import NotFoundError, ValidationError
from badge_engine.modules.credentials.identifiers import ResourceUrls
from badge_engine.modules.credentials.keys import DID_KEY_PREFIX, IssuerKey, KeyManager
from badge_engine.modules.credentials.repository import CredentialStore
from badge_engine.modules.credentials.schemas import (
    DIDDocument,
    ImageObject,
    IssuerProfileDocument,
    IssuerRecord,
    VerificationMethod,
)


class DIDService:
    """Publish the key material verifiers need to check issuer proofs."""

    def __init__(self, store: CredentialStore, keys: KeyManager, urls: ResourceUrls) -> None:
        self._store = store
        self._keys = keys
        self._urls = urls

    # ------------------------------------------------------------------
    # did:key
    # ------------------------------------------------------------------

    async def generate_did_document(self, issuer_id: UUID) -> DIDDocument:
        """The issuer key's did:key document, provisioning the key if needed."""
        await self._require_issuer(issuer_id)
        key = await self._keys.ensure_key(issuer_id)
        vm = _verification_method(key)
        return DIDDocument(
            id=key.controller,
            verification_method=[vm],
            authentication=[vm.id],
            assertion_method=[vm.id],
        )

    # ------------------------------------------------------------------
    # Issuer profile
    # ------------------------------------------------------------------

    async def generate_issuer_profile(self, issuer_id: UUID) -> IssuerProfileDocument:
        """OB3 ``Profile`` listing the verification method the issuer signs with."""
        issuer = await self._require_issuer(issuer_id)
        key = await self._keys.ensure_key(issuer_id)
        return IssuerProfileDocument(
            id=self._urls.issuer_iri(issuer),
            name=issuer.name,
            url=issuer.url,
            email=issuer.email,
            description=issuer.description,
            image=ImageObject(id=issuer.image) if issuer.image else None,
            verification_method=[_verification_method(key)],
        )

    async def _require_issuer(self, issuer_id: UUID) -> IssuerRecord:
        issuer = await self._store.get_issuer(issuer_id)
        if issuer is None:
            raise NotFoundError(f"issuer {issuer_id} not found")
        return issuer


def _verification_method(key: IssuerKey) -> VerificationMethod:
    return VerificationMethod(
        id=key.verification_method,
        controller=key.controller,
        public_key_multibase=key.public_key_multibase,
    )


def public_key_from_did_key(did: str) -> bytes:
    """Raw Ed25519 public key encoded in a ``did:key`` identifier or method id."""
    if not did.startswith(DID_KEY_PREFIX):
        raise ValidationError(f"not a did:key identifier: {did!r}")
    # did:key:<mb> and did:key:<mb>#<mb> both carry the key in the method-specific id
    multibase_key = did[len(DID_KEY_PREFIX) :].partition("#")[0]
    return decode_ed25519_public_key(multibase_key)

