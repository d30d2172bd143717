"""Data Integrity proofs using the ``eddsa-jcs-2022`` cryptosuite.

Signing and verification share one hashing path::

    hashData = SHA-256(JCS(proofConfig)) || SHA-256(JCS(document without proof))

where ``proofConfig`` is the proof object minus ``proofValue``. The Ed25519
signature over ``hashData`` is embedded as a base58btc multibase string.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

import pydantic

from badge_engine.core.crypto.canonicalization import (
    PROOF_FIELD,
    canonicalize,
    canonicalize_jcs_bytes,
    sha256_digest,
)
from badge_engine.core.crypto.multibase import decode_base58btc, encode_base58btc
from badge_engine.core.crypto.signing import verify_signature
from badge_engine.core.errors import (
    BadgeEngineError,
    NotFoundError,
    ValidationError,
)
from badge_engine.core.logging import get_logger
from badge_engine.modules.credentials.formats import declared_contexts, document_issuer
from badge_engine.modules.credentials.identifiers import ResourceUrls
from badge_engine.modules.credentials.keys import IssuerKey, KeyManager
from badge_engine.modules.credentials.repository import CredentialStore
from badge_engine.modules.credentials.schemas import (
    DataIntegrityProof,
    IssuerRecord,
    format_datetime,
    utcnow,
)

logger = get_logger(__name__)

PROOF_TYPE = "DataIntegrityProof"
CRYPTOSUITE = "eddsa-jcs-2022"
PROOF_PURPOSE = "assertionMethod"
PROOF_VALUE_FIELD = "proofValue"


@dataclass(frozen=True, slots=True)
class ProofCheck:
    """Outcome of checking one embedded proof; ``error`` is set iff invalid."""

    valid: bool
    error: str | None = None
    verification_method: str | None = None
    issuer_id: UUID | None = None


def hash_data(proof_config: Mapping[str, Any], document: Mapping[str, Any]) -> bytes:
    """The 64 bytes an ``eddsa-jcs-2022`` signature covers."""
    return sha256_digest(canonicalize_jcs_bytes(dict(proof_config))) + sha256_digest(
        canonicalize(document)
    )


def _proof_config(proof: Mapping[str, Any]) -> dict[str, Any]:
    # every proof member except the signature itself is covered
    return {key: value for key, value in proof.items() if key != PROOF_VALUE_FIELD}


class ProofEngine:
    """Attach and check embedded proofs on credential documents."""

    def __init__(self, keys: KeyManager, store: CredentialStore, urls: ResourceUrls) -> None:
        self._keys = keys
        self._store = store
        self._urls = urls

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    async def sign(
        self,
        document: Mapping[str, Any],
        issuer_id: UUID,
        *,
        created: datetime | None = None,
    ) -> dict[str, Any]:
        """Return a copy of ``document`` with an embedded proof by ``issuer_id``.

        Raises
        ------
        ValidationError
            If the document already carries a proof, is not canonicalizable,
            or names a different issuer.
        SigningKeyError
            If the issuer's key cannot be provisioned or used.
        """
        issuer = await self._store.get_issuer(issuer_id)
        if issuer is None:
            raise NotFoundError(f"issuer {issuer_id} not found")
        key = await self._keys.ensure_key(issuer_id)
        return self.sign_with_key(document, issuer, key, created=created)

    def sign_with_key(
        self,
        document: Mapping[str, Any],
        issuer: IssuerRecord,
        key: IssuerKey,
        *,
        created: datetime | None = None,
    ) -> dict[str, Any]:
        """Sign with an already resolved issuer and key; performs no storage I/O.

        Used while a status-list transaction holds its lock.
        """
        if not isinstance(document, Mapping):
            raise ValidationError("credential document must be a JSON object")
        if PROOF_FIELD in document:
            raise ValidationError("document already carries a proof")
        if key.issuer_id != issuer.id:
            raise ValidationError(f"key {key!r} does not belong to issuer {issuer.id}")

        expected_issuer = self._urls.issuer_iri(issuer)
        declared_issuer = document_issuer(document)
        if declared_issuer != expected_issuer:
            raise ValidationError(
                f"document issuer {declared_issuer!r} does not match signing issuer "
                f"{expected_issuer!r}"
            )

        contexts = declared_contexts(document)
        proof = DataIntegrityProof(
            context=contexts or None,
            type=PROOF_TYPE,
            cryptosuite=CRYPTOSUITE,
            created=format_datetime(created or utcnow()),
            verification_method=key.verification_method,
            proof_purpose=PROOF_PURPOSE,
        )
        config = proof.model_dump(by_alias=True, exclude_none=True)
        signature = key.sign(hash_data(_proof_config(config), document))
        proof.proof_value = encode_base58btc(signature)

        signed = copy.deepcopy(dict(document))
        signed[PROOF_FIELD] = proof.model_dump(by_alias=True, exclude_none=True)
        logger.debug(
            "credential_signed",
            issuer_id=str(issuer.id),
            credential_id=document.get("id"),
            verification_method=key.verification_method,
        )
        return signed

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, document: Mapping[str, Any]) -> bool:
        return (await self.check(document)).valid

    async def check(self, document: Mapping[str, Any]) -> ProofCheck:
        """Check the embedded proof; never raises."""
        try:
            result = await self._check(document)
        except BadgeEngineError as exc:
            result = ProofCheck(valid=False, error=str(exc))
        if not result.valid:
            logger.info(
                "proof_verification_failed",
                credential_id=document.get("id") if isinstance(document, Mapping) else None,
                reason=result.error,
            )
        return result

    async def _check(self, document: Mapping[str, Any]) -> ProofCheck:
        if not isinstance(document, Mapping):
            return ProofCheck(valid=False, error="document is not a JSON object")
        raw_proof = document.get(PROOF_FIELD)
        if raw_proof is None:
            return ProofCheck(valid=False, error="proof is missing")
        if not isinstance(raw_proof, Mapping):
            return ProofCheck(valid=False, error="proof must be a single JSON object")

        try:
            proof = DataIntegrityProof.model_validate(dict(raw_proof))
        except pydantic.ValidationError as exc:
            return ProofCheck(valid=False, error=f"proof is malformed: {exc.error_count()} errors")

        if proof.type != PROOF_TYPE:
            return ProofCheck(valid=False, error=f"unsupported proof type {proof.type!r}")
        if proof.cryptosuite != CRYPTOSUITE:
            return ProofCheck(valid=False, error=f"unsupported cryptosuite {proof.cryptosuite!r}")
        if proof.proof_purpose != PROOF_PURPOSE:
            return ProofCheck(
                valid=False, error=f"unexpected proof purpose {proof.proof_purpose!r}"
            )
        if not proof.proof_value:
            return ProofCheck(valid=False, error="proof.proofValue is missing")
        if proof.context is not None:
            doc_contexts = declared_contexts(document)
            if doc_contexts[: len(proof.context)] != proof.context:
                return ProofCheck(valid=False, error="proof @context does not match document")

        signature = decode_base58btc(proof.proof_value)
        resolved = await self._keys.resolve_verification_method(proof.verification_method)

        issuer = await self._store.get_issuer(resolved.issuer_id)
        if issuer is None:
            return ProofCheck(valid=False, error="issuer of verification method is unknown")
        if document_issuer(document) != self._urls.issuer_iri(issuer):
            return ProofCheck(
                valid=False,
                error="verification method is not controlled by the document issuer",
            )

        payload = hash_data(_proof_config(raw_proof), document)
        if not verify_signature(payload, signature, resolved.public_key):
            return ProofCheck(
                valid=False,
                error="signature does not match document",
                verification_method=resolved.verification_method,
                issuer_id=resolved.issuer_id,
            )
        return ProofCheck(
            valid=True,
            verification_method=resolved.verification_method,
            issuer_id=resolved.issuer_id,
        )
