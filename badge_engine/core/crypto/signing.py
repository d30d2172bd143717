"""
Ed25519 digital signing for credential proofs.

Uses the ``cryptography`` library for Ed25519 key generation, signing, and
verification. Keys travel as raw 32-byte values; callers are responsible for
protecting private bytes at rest.
"""

from __future__ import annotations

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

ED25519_SIGNATURE_BYTES = 64


def generate_signing_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 key pair.

    Returns
    -------
    tuple[bytes, bytes]
        ``(private_key_raw, public_key_raw)``, 32 bytes each.
    """
    private_key = Ed25519PrivateKey.generate()
    private_raw = private_key.private_bytes(
        encoding=Encoding.Raw,
        format=PrivateFormat.Raw,
        encryption_algorithm=NoEncryption(),
    )
    return private_raw, public_key_bytes(private_key.public_key())


def public_key_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(encoding=Encoding.Raw, format=PublicFormat.Raw)


def load_public_key(public_key_raw: bytes) -> Ed25519PublicKey:
    """Load a raw Ed25519 public key.

    Raises
    ------
    ValueError
        If ``public_key_raw`` is not a 32-byte Ed25519 key.
    """
    return Ed25519PublicKey.from_public_bytes(public_key_raw)


def sign_bytes(data: bytes, private_key_raw: bytes) -> bytes:
    """Sign ``data`` with a raw Ed25519 private key.

    Parameters
    ----------
    data:
        Message bytes to sign.
    private_key_raw:
        32-byte Ed25519 private key seed.

    Returns
    -------
    bytes
        64-byte Ed25519 signature.
    """
    private_key = Ed25519PrivateKey.from_private_bytes(private_key_raw)
    return private_key.sign(data)


def verify_signature(data: bytes, signature: bytes, public_key: Ed25519PublicKey) -> bool:
    """Verify an Ed25519 signature.

    Returns
    -------
    bool
        ``True`` if the signature is valid, ``False`` otherwise.
    """
    if len(signature) != ED25519_SIGNATURE_BYTES:
        return False
    try:
        public_key.verify(signature, data)
        return True
    except InvalidSignature:
        return False
