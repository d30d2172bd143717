"""Typed failures raised by issuance-side operations.

Verification never raises; it folds these into a ``VerificationResult``.
"""

from __future__ import annotations


class BadgeEngineError(Exception):
    """Base class for every engine failure."""


class ValidationError(BadgeEngineError):
    """A document or record is structurally unusable for the requested operation."""


class SigningKeyError(BadgeEngineError):
    """An issuer signing key is missing, corrupt, undecryptable or unreachable."""


class SignatureError(BadgeEngineError):
    """A proof could not be produced or a verification method could not be resolved."""


class RevocationError(BadgeEngineError):
    """A status list operation was rejected (unknown list, unallocated index)."""


class StorageError(BadgeEngineError):
    """The storage collaborator failed or is unavailable."""


class NotFoundError(StorageError):
    """A referenced record does not exist."""


class StorageConflictError(StorageError):
    """A concurrent writer won a race on a single-writer section; safe to retry."""
