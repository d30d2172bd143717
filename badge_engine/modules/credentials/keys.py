"""Issuer signing key lifecycle: provisioning, protected storage and scoped use."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from badge_engine.core.crypto.multibase import (
    decode_ed25519_public_key,
    encode_ed25519_public_key,
)
from badge_engine.core.crypto.signing import generate_signing_keypair, load_public_key, sign_bytes
from badge_engine.core.encryption import EncryptionError, KeyMaterialEncryptor
from badge_engine.core.errors import (
    SignatureError,
    SigningKeyError,
    StorageError,
    ValidationError,
)
from badge_engine.core.logging import get_logger
from badge_engine.modules.credentials.repository import CredentialStore
from badge_engine.modules.credentials.schemas import SigningKeyRecord

logger = get_logger(__name__)

DID_KEY_PREFIX = "did:key:"


def did_key_for(public_key_multibase: str) -> str:
    return f"{DID_KEY_PREFIX}{public_key_multibase}"


def verification_method_for(public_key_multibase: str) -> str:
    """``did:key:<mb>#<mb>``, the did:key method's sole verification method."""
    return f"{did_key_for(public_key_multibase)}#{public_key_multibase}"


def _key_aad(issuer_id: UUID) -> str:
    # binds the ciphertext to its issuer so rows cannot be swapped between issuers
    return f"issuer-key:{issuer_id}"


class IssuerKey:
    """Signing capability for one issuer.

    The private key is held only as ciphertext; :meth:`sign` decrypts it,
    signs, and lets the plaintext fall out of scope before returning.
    """

    __slots__ = ("_record", "_encryptor")

    def __init__(self, record: SigningKeyRecord, encryptor: KeyMaterialEncryptor) -> None:
        self._record = record
        self._encryptor = encryptor

    @property
    def issuer_id(self) -> UUID:
        return self._record.issuer_id

    @property
    def public_key_multibase(self) -> str:
        return self._record.public_key_multibase

    @property
    def verification_method(self) -> str:
        return self._record.verification_method

    @property
    def controller(self) -> str:
        return did_key_for(self._record.public_key_multibase)

    def public_key(self) -> Ed25519PublicKey:
        return load_public_key(decode_ed25519_public_key(self._record.public_key_multibase))

    def sign(self, data: bytes) -> bytes:
        try:
            private_raw = self._encryptor.decrypt(
                self._record.encrypted_private_key, aad=_key_aad(self.issuer_id)
            )
        except EncryptionError as exc:
            logger.error(
                "signing_key_decrypt_failed",
                issuer_id=str(self.issuer_id),
                key_id=str(self._record.id),
            )
            raise SigningKeyError(f"signing key for issuer {self.issuer_id} is unusable") from exc
        try:
            return sign_bytes(data, private_raw)
        except ValueError as exc:
            raise SigningKeyError(f"signing key for issuer {self.issuer_id} is corrupt") from exc
        finally:
            del private_raw

    def __repr__(self) -> str:
        return f"IssuerKey(issuer_id={self.issuer_id!s}, vm={self.verification_method!r})"


@dataclass(frozen=True, slots=True)
class ResolvedKey:
    """Public key material behind a verification method."""

    issuer_id: UUID
    verification_method: str
    public_key: Ed25519PublicKey


class KeyManager:
    """Provision and hand out issuer keys through the storage collaborator."""

    def __init__(self, store: CredentialStore, encryptor: KeyMaterialEncryptor) -> None:
        self._store = store
        self._encryptor = encryptor

    async def get_key(self, issuer_id: UUID) -> IssuerKey | None:
        """Active key for ``issuer_id``, or None.

        Material still wrapped under a retired encryption key is re-wrapped
        under the active one and written back.
        """
        try:
            record = await self._store.get_active_signing_key(issuer_id)
        except StorageError as exc:
            raise SigningKeyError(f"key storage unavailable for issuer {issuer_id}") from exc
        if record is None:
            return None
        return IssuerKey(await self._rewrap_if_stale(record), self._encryptor)

    async def ensure_key(self, issuer_id: UUID) -> IssuerKey:
        """Return the issuer's active key, provisioning one on first use.

        Concurrent first-time callers converge on the single key the store
        accepted; the losers' freshly generated material is discarded.
        """
        existing = await self.get_key(issuer_id)
        if existing is not None:
            return existing

        candidate = self._generate(issuer_id)
        try:
            stored = await self._store.create_signing_key_if_absent(candidate)
        except StorageError as exc:
            raise SigningKeyError(f"could not persist signing key for issuer {issuer_id}") from exc

        if stored.id == candidate.id:
            logger.info(
                "signing_key_provisioned",
                issuer_id=str(issuer_id),
                verification_method=stored.verification_method,
                encryption_key_id=self._encryptor.active_key_id,
            )
        return IssuerKey(stored, self._encryptor)

    async def rotate_key(self, issuer_id: UUID) -> IssuerKey:
        """Generate a new active key; the previous one stays resolvable."""
        candidate = self._generate(issuer_id)
        try:
            previous = await self._store.rotate_signing_key(candidate)
        except StorageError as exc:
            raise SigningKeyError(f"could not rotate signing key for issuer {issuer_id}") from exc

        logger.info(
            "signing_key_rotated",
            issuer_id=str(issuer_id),
            previous_verification_method=previous.verification_method if previous else None,
            verification_method=candidate.verification_method,
        )
        return IssuerKey(candidate, self._encryptor)

    def _generate(self, issuer_id: UUID) -> SigningKeyRecord:
        private_raw, public_raw = generate_signing_keypair()
        public_mb = encode_ed25519_public_key(public_raw)
        try:
            return SigningKeyRecord(
                issuer_id=issuer_id,
                public_key_multibase=public_mb,
                verification_method=verification_method_for(public_mb),
                encrypted_private_key=self._encryptor.encrypt(
                    private_raw, aad=_key_aad(issuer_id)
                ),
            )
        finally:
            del private_raw

    async def _rewrap_if_stale(self, record: SigningKeyRecord) -> SigningKeyRecord:
        token = record.encrypted_private_key
        try:
            if not self._encryptor.needs_rewrap(token):
                return record
            rewrapped = self._encryptor.rewrap(token, aad=_key_aad(record.issuer_id))
        except EncryptionError as exc:
            # left as is; signing reports the unusable key
            logger.warning(
                "signing_key_rewrap_failed",
                issuer_id=str(record.issuer_id),
                key_id=str(record.id),
                error=str(exc),
            )
            return record

        try:
            await self._store.update_signing_key_material(record.id, rewrapped)
        except StorageError as exc:
            raise SigningKeyError(
                f"could not store re-wrapped key for issuer {record.issuer_id}"
            ) from exc
        logger.info(
            "signing_key_rewrapped",
            issuer_id=str(record.issuer_id),
            key_id=str(record.id),
            encryption_key_id=self._encryptor.active_key_id,
        )
        return record.model_copy(update={"encrypted_private_key": rewrapped})

    async def resolve_verification_method(self, verification_method: str) -> ResolvedKey:
        """Map a ``verificationMethod`` to its issuer and public key.

        Raises
        ------
        SignatureError
            If the method is unknown to this engine or its did:key encoding
            disagrees with the stored public key.
        """
        try:
            record = await self._store.get_signing_key_by_verification_method(
                verification_method
            )
        except StorageError as exc:
            raise SignatureError("key storage unavailable") from exc
        if record is None:
            raise SignatureError(f"unknown verification method {verification_method}")

        fragment = verification_method.partition("#")[2]
        if fragment and fragment != record.public_key_multibase:
            raise SignatureError("verification method does not encode the stored public key")
        try:
            public_key = load_public_key(decode_ed25519_public_key(record.public_key_multibase))
        except (ValidationError, ValueError) as exc:
            raise SignatureError(f"stored public key for {verification_method} is invalid") from exc
        return ResolvedKey(
            issuer_id=record.issuer_id,
            verification_method=record.verification_method,
            public_key=public_key,
        )
