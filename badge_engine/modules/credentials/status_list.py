"""
Bitstring Status List management for credential revocation.

Implements the W3C Bitstring Status List v1.0 encoding: bit ``i`` is the
``i``-th bit counting from the most significant bit of byte 0, the arena is
gzip-compressed and published as a base64url multibase string. Each issuer
owns one list; its wrapping ``BitstringStatusListCredential`` is re-signed on
every bit change.
"""

from __future__ import annotations

import gzip
import zlib
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from badge_engine.core.config import Settings
from badge_engine.core.crypto.multibase import decode_base64url, encode_base64url
from badge_engine.core.errors import (
    NotFoundError,
    RevocationError,
    StorageConflictError,
    ValidationError,
)
from badge_engine.core.logging import get_logger
from badge_engine.modules.credentials.identifiers import ResourceUrls
from badge_engine.modules.credentials.keys import IssuerKey, KeyManager
from badge_engine.modules.credentials.proofs import ProofEngine
from badge_engine.modules.credentials.repository import CredentialStore, StatusListTransaction
from badge_engine.modules.credentials.schemas import (
    AssertionRecord,
    BitstringStatusList,
    BitstringStatusListCredential,
    BitstringStatusListEntry,
    IssuerRecord,
    StatusListRecord,
    format_datetime,
    utcnow,
)

logger = get_logger(__name__)

STATUS_PURPOSE = "revocation"
STATUS_ENTRY_TYPE = "BitstringStatusListEntry"
# 16 MiB of arena, far beyond any list this engine publishes
MAX_DECODED_BYTES = 16 * 1024 * 1024


class Bitstring:
    """Growable MSB-first bit arena."""

    __slots__ = ("_data",)

    def __init__(self, data: bytes | bytearray = b"") -> None:
        self._data = bytearray(data)

    @classmethod
    def zeroed(cls, bits: int) -> Bitstring:
        return cls(bytes(_bytes_for(bits)))

    def __len__(self) -> int:
        return len(self._data) * 8

    def get(self, index: int) -> bool:
        """Bit at ``index``; positions past the arena read as unset."""
        if index < 0:
            raise IndexError(f"negative status index {index}")
        byte_index, bit_offset = divmod(index, 8)
        if byte_index >= len(self._data):
            return False
        return bool(self._data[byte_index] & (0x80 >> bit_offset))

    def set(self, index: int, value: bool = True) -> None:
        if index < 0:
            raise IndexError(f"negative status index {index}")
        self.ensure_capacity(index + 1)
        byte_index, bit_offset = divmod(index, 8)
        if value:
            self._data[byte_index] |= 0x80 >> bit_offset
        else:
            self._data[byte_index] &= ~(0x80 >> bit_offset) & 0xFF

    def ensure_capacity(self, bits: int) -> bool:
        """Grow (in whole bytes) to hold ``bits`` positions; True if it grew."""
        needed = _bytes_for(bits)
        if needed <= len(self._data):
            return False
        self._data.extend(bytes(needed - len(self._data)))
        return True

    def to_bytes(self) -> bytes:
        return bytes(self._data)

    def encode(self, min_bits: int = 0) -> str:
        """``u`` + base64url(gzip(arena)), padded with zero bytes to ``min_bits``."""
        payload = self.to_bytes()
        floor = _bytes_for(min_bits)
        if len(payload) < floor:
            payload += bytes(floor - len(payload))
        return encode_base64url(gzip.compress(payload, mtime=0))

    @classmethod
    def decode(cls, encoded: str, max_bytes: int = MAX_DECODED_BYTES) -> Bitstring:
        """Inverse of :meth:`encode`; refuses arenas larger than ``max_bytes``."""
        decompressor = zlib.decompressobj(wbits=zlib.MAX_WBITS | 16)
        try:
            data = decompressor.decompress(decode_base64url(encoded), max_bytes + 1)
        except zlib.error as exc:
            raise ValidationError(f"encodedList is not a gzip stream: {exc}") from exc
        if len(data) > max_bytes:
            raise ValidationError(f"encodedList expands beyond {max_bytes} bytes")
        if not decompressor.eof:
            raise ValidationError("encodedList is a truncated gzip stream")
        return cls(data)


def _bytes_for(bits: int) -> int:
    return (bits + 7) // 8


def decode_status_list_credential(document: Mapping[str, Any]) -> Bitstring:
    """Extract the bitstring from a ``BitstringStatusListCredential``."""
    subject = document.get("credentialSubject")
    if not isinstance(subject, Mapping):
        raise ValidationError("status list credential has no credentialSubject")
    encoded = subject.get("encodedList")
    if not isinstance(encoded, str):
        raise ValidationError("status list credential has no encodedList")
    return Bitstring.decode(encoded)


def parse_status_entry(entry: Any) -> tuple[str, int]:
    """Validate a ``credentialStatus`` entry; returns ``(list_url, index)``."""
    if not isinstance(entry, Mapping):
        raise ValidationError("credentialStatus must be a single JSON object")
    if entry.get("type") != STATUS_ENTRY_TYPE:
        raise ValidationError(f"credentialStatus.type must be {STATUS_ENTRY_TYPE}")
    if entry.get("statusPurpose") != STATUS_PURPOSE:
        raise ValidationError(f"credentialStatus.statusPurpose must be {STATUS_PURPOSE!r}")
    list_url = entry.get("statusListCredential")
    if not isinstance(list_url, str) or not list_url:
        raise ValidationError("credentialStatus.statusListCredential is missing")
    raw_index = entry.get("statusListIndex")
    if not isinstance(raw_index, str) or not (raw_index.isascii() and raw_index.isdigit()):
        raise ValidationError(
            "credentialStatus.statusListIndex must be a non-negative integer string"
        )
    return list_url, int(raw_index)


class StatusListManager:
    """Allocate status indices and flip revocation bits per issuer."""

    def __init__(
        self,
        store: CredentialStore,
        keys: KeyManager,
        proofs: ProofEngine,
        urls: ResourceUrls,
        settings: Settings,
    ) -> None:
        self._store = store
        self._keys = keys
        self._proofs = proofs
        self._urls = urls
        self._min_bits = settings.status_list_min_bits
        self._max_retries = settings.status_list_max_retries

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    async def allocate_index(self, issuer_id: UUID, credential_id: UUID | None = None) -> int:
        """Reserve the next unused index in the issuer's list.

        With ``credential_id`` the index is written to that credential in the
        same transaction, and a credential that already holds an index gets
        it back unchanged.
        """
        issuer = await self._require_issuer(issuer_id)
        key = await self._keys.ensure_key(issuer_id)

        for attempt in range(1, self._max_retries + 1):
            try:
                async with self._store.status_list_transaction(issuer_id) as tx:
                    index, fresh = await self._allocate_in(tx, issuer, key, credential_id)
                break
            except StorageConflictError:
                self._log_conflict("allocate_index", issuer_id, attempt)
                if attempt == self._max_retries:
                    raise

        if fresh:
            logger.info(
                "status_index_allocated",
                issuer_id=str(issuer_id),
                credential_id=str(credential_id) if credential_id else None,
                status_index=index,
            )
        return index

    async def register_assertion(self, record: AssertionRecord) -> AssertionRecord:
        """Insert a new assertion together with its freshly allocated index.

        Either both commit or neither does; the returned copy carries the
        index. The record is stored unissued.
        """
        issuer = await self._require_issuer(record.issuer_id)
        key = await self._keys.ensure_key(record.issuer_id)

        for attempt in range(1, self._max_retries + 1):
            numbered = record.model_copy(update={"issued": False})
            try:
                async with self._store.status_list_transaction(issuer.id) as tx:
                    numbered.status_index = await self._next_index(tx, issuer, key)
                    await tx.add_assertion(numbered)
                break
            except StorageConflictError:
                self._log_conflict("register_assertion", issuer.id, attempt)
                if attempt == self._max_retries:
                    raise

        logger.info(
            "status_index_allocated",
            issuer_id=str(issuer.id),
            credential_id=str(numbered.id),
            status_index=numbered.status_index,
        )
        return numbered

    async def _allocate_in(
        self,
        tx: StatusListTransaction,
        issuer: IssuerRecord,
        key: IssuerKey,
        credential_id: UUID | None,
    ) -> tuple[int, bool]:
        if credential_id is not None:
            assertion = await tx.get_assertion(credential_id)
            if assertion is None:
                raise NotFoundError(f"assertion {credential_id} not found")
            if assertion.issuer_id != issuer.id:
                raise ValidationError(
                    f"assertion {credential_id} belongs to issuer {assertion.issuer_id}"
                )
            if assertion.status_index is not None:
                return assertion.status_index, False

        index = await self._next_index(tx, issuer, key)
        if credential_id is not None:
            await tx.assign_status_index(credential_id, index)
        return index, True

    async def _next_index(
        self, tx: StatusListTransaction, issuer: IssuerRecord, key: IssuerKey
    ) -> int:
        record = tx.record or self._new_record(issuer.id)
        index = record.next_index
        bits = Bitstring(record.bitstring)
        grew = bits.ensure_capacity(index + 1)
        record.next_index = index + 1
        record.bitstring = bits.to_bytes()
        if grew or record.document is None:
            record.document = self._sign_list(issuer, key, record)
        await tx.save(record)
        return index

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def set_revoked(
        self,
        issuer_id: UUID,
        index: int,
        revoked: bool,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Set bit ``index`` and return the re-signed status list credential.

        Raises
        ------
        RevocationError
            If the issuer has no list or ``index`` was never allocated.
        """
        if index < 0:
            raise RevocationError(f"status index {index} is negative")
        issuer = await self._require_issuer(issuer_id)
        key = await self._keys.ensure_key(issuer_id)

        for attempt in range(1, self._max_retries + 1):
            try:
                async with self._store.status_list_transaction(issuer_id) as tx:
                    record = tx.record
                    if record is None:
                        raise RevocationError(f"issuer {issuer_id} has no status list")
                    if index >= record.next_index:
                        raise RevocationError(
                            f"status index {index} was never allocated for issuer {issuer_id}"
                        )
                    bits = Bitstring(record.bitstring)
                    bits.set(index, revoked)
                    record.bitstring = bits.to_bytes()
                    record.document = self._sign_list(issuer, key, record)
                    await tx.mark_revocation(index, revoked=revoked, reason=reason, at=utcnow())
                    await tx.save(record)
                    document = record.document
                break
            except StorageConflictError:
                self._log_conflict("set_revoked", issuer_id, attempt)
                if attempt == self._max_retries:
                    raise

        logger.info(
            "status_list_resigned",
            issuer_id=str(issuer_id),
            status_index=index,
            revoked=revoked,
        )
        return document

    async def is_revoked(self, issuer_id: UUID, index: int) -> bool:
        """Read bit ``index`` of the committed list."""
        if index < 0:
            raise RevocationError(f"status index {index} is negative")
        record = await self._store.get_status_list(issuer_id)
        if record is None:
            raise RevocationError(f"issuer {issuer_id} has no status list")
        return Bitstring(record.bitstring).get(index)

    async def resolve_entry(self, entry: Any) -> tuple[UUID, int]:
        """Map a ``credentialStatus`` entry to ``(issuer_id, index)``."""
        list_url, index = parse_status_entry(entry)
        record = await self._store.get_status_list_by_url(list_url)
        if record is None:
            raise RevocationError(f"unknown status list {list_url}")
        return record.issuer_id, index

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    async def get_status_list_credential(self, issuer_id: UUID) -> dict[str, Any]:
        """Current signed list credential, creating an empty one on first request."""
        record = await self._store.get_status_list(issuer_id)
        if record is not None and record.document is not None:
            return record.document

        issuer = await self._require_issuer(issuer_id)
        key = await self._keys.ensure_key(issuer_id)
        for attempt in range(1, self._max_retries + 1):
            try:
                async with self._store.status_list_transaction(issuer_id) as tx:
                    record = tx.record or self._new_record(issuer_id)
                    if record.document is None:
                        record.document = self._sign_list(issuer, key, record)
                        await tx.save(record)
                    document = record.document
                break
            except StorageConflictError:
                self._log_conflict("get_status_list_credential", issuer_id, attempt)
                if attempt == self._max_retries:
                    raise
        return document

    def status_entry(self, issuer_id: UUID, index: int) -> BitstringStatusListEntry:
        return BitstringStatusListEntry(
            id=self._urls.status_list_entry(issuer_id, index),
            status_purpose=STATUS_PURPOSE,
            status_list_index=str(index),
            status_list_credential=self._urls.status_list(issuer_id),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_record(self, issuer_id: UUID) -> StatusListRecord:
        return StatusListRecord(
            issuer_id=issuer_id,
            url=self._urls.status_list(issuer_id),
            bitstring=Bitstring.zeroed(self._min_bits).to_bytes(),
            next_index=0,
        )

    def _sign_list(
        self, issuer: IssuerRecord, key: IssuerKey, record: StatusListRecord
    ) -> dict[str, Any]:
        body = BitstringStatusListCredential(
            id=record.url,
            issuer=self._urls.issuer_iri(issuer),
            valid_from=format_datetime(utcnow()),
            credential_subject=BitstringStatusList(
                id=f"{record.url}#list",
                status_purpose=STATUS_PURPOSE,
                encoded_list=Bitstring(record.bitstring).encode(self._min_bits),
            ),
        )
        return self._proofs.sign_with_key(body.model_dump(by_alias=True), issuer, key)

    async def _require_issuer(self, issuer_id: UUID) -> IssuerRecord:
        issuer = await self._store.get_issuer(issuer_id)
        if issuer is None:
            raise NotFoundError(f"issuer {issuer_id} not found")
        return issuer

    def _log_conflict(self, operation: str, issuer_id: UUID, attempt: int) -> None:
        logger.warning(
            "status_list_conflict",
            operation=operation,
            issuer_id=str(issuer_id),
            attempt=attempt,
            max_attempts=self._max_retries,
        )
