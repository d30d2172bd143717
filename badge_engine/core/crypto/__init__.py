"""
Cryptographic primitives for credential proofs.

Pure library modules:
- **canonicalization**: RFC 8785 (JCS) canonical bytes with proof stripping
- **multibase**: base58btc / base64url multibase and Ed25519 multicodec keys
- **signing**: Ed25519 key generation, signing and verification
"""

from badge_engine.core.crypto.canonicalization import (
    canonicalize,
    canonicalize_jcs_bytes,
    sha256_digest,
    strip_proof,
)
from badge_engine.core.crypto.multibase import (
    decode_base58btc,
    decode_base64url,
    decode_ed25519_public_key,
    encode_base58btc,
    encode_base64url,
    encode_ed25519_public_key,
)
from badge_engine.core.crypto.signing import (
    generate_signing_keypair,
    load_public_key,
    public_key_bytes,
    sign_bytes,
    verify_signature,
)

__all__ = [
    "canonicalize",
    "canonicalize_jcs_bytes",
    "sha256_digest",
    "strip_proof",
    "decode_base58btc",
    "decode_base64url",
    "decode_ed25519_public_key",
    "encode_base58btc",
    "encode_base64url",
    "encode_ed25519_public_key",
    "generate_signing_keypair",
    "load_public_key",
    "public_key_bytes",
    "sign_bytes",
    "verify_signature",
]
