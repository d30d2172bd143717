"""AES-256-GCM protection for issuer private keys at rest."""

from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from badge_engine.core.config import Settings

# Token format: enc:v2:<key id>:<base64(nonce || ciphertext || tag)>
_ENC_V2_PREFIX = "enc:v2:"
_NONCE_BYTES = 12


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str, *, error_context: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except ValueError as exc:
        raise EncryptionError(error_context) from exc


def _to_aad_bytes(aad: str | bytes | None) -> bytes | None:
    if aad is None:
        return None
    if isinstance(aad, bytes):
        return aad
    return aad.encode("utf-8")


class KeyMaterialEncryptor:
    """Encrypt/decrypt private key bytes with keyring-aware ``enc:v2`` tokens.

    New tokens are always written under the active key id; tokens written under
    an older key id keep decrypting as long as that key stays in the keyring.
    """

    def __init__(
        self,
        master_key_b64: str | None = None,
        *,
        keyring: dict[str, str] | None = None,
        active_key_id: str = "default",
    ) -> None:
        parsed_keyring: dict[str, str] = {}
        if keyring:
            parsed_keyring = {
                str(key_id).strip(): str(value).strip()
                for key_id, value in keyring.items()
                if str(key_id).strip() and str(value).strip()
            }
        if not parsed_keyring and master_key_b64:
            parsed_keyring[active_key_id.strip() or "default"] = master_key_b64.strip()
        if not parsed_keyring:
            raise EncryptionError(
                "encryption keyring is empty (set ENCRYPTION_KEYRING_JSON or ENCRYPTION_MASTER_KEY)"
            )

        self._keys: dict[str, bytes] = {}
        for key_id, key_b64 in parsed_keyring.items():
            raw_key = _b64decode(
                key_b64,
                error_context=f"encryption key '{key_id}' is not valid base64",
            )
            if len(raw_key) != 32:
                raise EncryptionError(
                    f"encryption key '{key_id}' must be 256 bits (32 bytes), got {len(raw_key)}"
                )
            self._keys[key_id] = raw_key

        active = active_key_id.strip() or "default"
        if active not in self._keys:
            active = next(iter(self._keys))
        self._active_key_id = active

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyMaterialEncryptor:
        return cls(
            keyring=settings.encryption_keyring,
            active_key_id=settings.encryption_active_key_id,
        )

    @property
    def active_key_id(self) -> str:
        return self._active_key_id

    # ------------------------------------------------------------------
    # Token API
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: bytes, *, aad: str | bytes | None = None) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        key = self._keys[self._active_key_id]
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, _to_aad_bytes(aad))
        return f"{_ENC_V2_PREFIX}{self._active_key_id}:{_b64encode(nonce + ciphertext)}"

    def decrypt(self, token: str, *, aad: str | bytes | None = None) -> bytes:
        if not token.startswith(_ENC_V2_PREFIX):
            raise EncryptionError("value does not have a supported encrypted prefix")
        key_id, blob = self._split_token(token)
        nonce = blob[:_NONCE_BYTES]
        ciphertext = blob[_NONCE_BYTES:]
        try:
            return AESGCM(self._keys[key_id]).decrypt(nonce, ciphertext, _to_aad_bytes(aad))
        except InvalidTag as exc:
            raise EncryptionError(
                "decryption failed: key mismatch, AAD mismatch, or corrupted ciphertext"
            ) from exc

    def needs_rewrap(self, token: str) -> bool:
        """True when ``token`` was written under a key other than the active one."""
        key_id, _ = self._split_token(token)
        return key_id != self._active_key_id

    def rewrap(self, token: str, *, aad: str | bytes | None = None) -> str:
        """Re-encrypt ``token`` under the active key id."""
        return self.encrypt(self.decrypt(token, aad=aad), aad=aad)

    def _split_token(self, token: str) -> tuple[str, bytes]:
        raw = token[len(_ENC_V2_PREFIX) :]
        if ":" not in raw:
            raise EncryptionError("corrupted enc:v2 payload (missing key id delimiter)")
        key_id, b64_payload = raw.split(":", 1)
        key_id = key_id.strip()
        if key_id not in self._keys:
            raise EncryptionError(f"unknown encryption key id '{key_id}' for enc:v2 payload")
        blob = _b64decode(b64_payload, error_context="corrupted enc:v2 payload (bad base64)")
        if len(blob) <= _NONCE_BYTES:
            raise EncryptionError("corrupted enc:v2 payload (too short)")
        return key_id, blob
