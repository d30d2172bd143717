"""Multibase / multicodec helpers for Ed25519 keys and signatures.

Only the two bases the credential formats need are supported:
``z`` (base58btc) for keys and proof values, ``u`` (base64url, no padding)
for status list bitstrings.
"""

from __future__ import annotations

import base64

import base58

from badge_engine.core.errors import ValidationError

BASE58BTC_PREFIX = "z"
BASE64URL_PREFIX = "u"

# multicodec varint for ed25519-pub (0xed)
ED25519_PUB_MULTICODEC = b"\xed\x01"
ED25519_PUBLIC_KEY_BYTES = 32


def encode_base58btc(data: bytes) -> str:
    return BASE58BTC_PREFIX + base58.b58encode(data).decode("ascii")


def decode_base58btc(value: str) -> bytes:
    if not isinstance(value, str) or not value.startswith(BASE58BTC_PREFIX):
        raise ValidationError("multibase value must use the base58btc 'z' prefix")
    try:
        return base58.b58decode(value[1:])
    except ValueError as exc:
        raise ValidationError(f"invalid base58btc payload: {exc}") from exc


def encode_base64url(data: bytes) -> str:
    return BASE64URL_PREFIX + base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def decode_base64url(value: str) -> bytes:
    if not isinstance(value, str) or not value.startswith(BASE64URL_PREFIX):
        raise ValidationError("multibase value must use the base64url 'u' prefix")
    payload = value[1:]
    payload += "=" * (-len(payload) % 4)
    try:
        return base64.urlsafe_b64decode(payload)
    except ValueError as exc:
        raise ValidationError(f"invalid base64url payload: {exc}") from exc


def encode_ed25519_public_key(raw_key: bytes) -> str:
    """``z`` + base58btc(0xed01 || key), the Multikey form used in did:key."""
    if len(raw_key) != ED25519_PUBLIC_KEY_BYTES:
        raise ValidationError(f"Ed25519 public key must be 32 bytes, got {len(raw_key)}")
    return encode_base58btc(ED25519_PUB_MULTICODEC + raw_key)


def decode_ed25519_public_key(multibase_key: str) -> bytes:
    decoded = decode_base58btc(multibase_key)
    if not decoded.startswith(ED25519_PUB_MULTICODEC):
        raise ValidationError("multibase key is not an ed25519-pub multicodec value")
    raw_key = decoded[len(ED25519_PUB_MULTICODEC) :]
    if len(raw_key) != ED25519_PUBLIC_KEY_BYTES:
        raise ValidationError(f"Ed25519 public key must be 32 bytes, got {len(raw_key)}")
    return raw_key
