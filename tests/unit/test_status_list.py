"""Tests for Bitstring Status List encoding and per-issuer revocation state."""

from __future__ import annotations

import asyncio
import gzip
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID, uuid4

import pytest

from badge_engine.core.config import Settings
from badge_engine.core.crypto.multibase import encode_base64url
from badge_engine.core.encryption import KeyMaterialEncryptor
from badge_engine.core.errors import (
    NotFoundError,
    RevocationError,
    StorageConflictError,
    ValidationError,
)
from badge_engine.modules.credentials.repository import InMemoryCredentialStore
from badge_engine.modules.credentials.schemas import (
    AchievementRecord,
    AssertionRecord,
    IssuerRecord,
    SigningKeyRecord,
)
from badge_engine.modules.credentials.service import CredentialService
from badge_engine.modules.credentials.status_list import (
    Bitstring,
    StatusListManager,
    decode_status_list_credential,
    parse_status_entry,
)


class TestBitstring:
    def test_bits_are_msb_first(self) -> None:
        bits = Bitstring.zeroed(16)
        bits.set(0)
        bits.set(9)
        assert bits.to_bytes() == b"\x80\x40"
        assert bits.get(0) and bits.get(9)
        assert not bits.get(1)

    def test_clear_bit(self) -> None:
        bits = Bitstring(b"\xff")
        bits.set(3, False)
        assert bits.to_bytes() == b"\xef"

    def test_read_past_end_is_unset(self) -> None:
        assert Bitstring.zeroed(8).get(10_000) is False

    def test_negative_index_rejected(self) -> None:
        with pytest.raises(IndexError):
            Bitstring.zeroed(8).get(-1)

    def test_grows_in_whole_bytes(self) -> None:
        bits = Bitstring()
        assert bits.ensure_capacity(9)
        assert len(bits) == 16
        assert not bits.ensure_capacity(16)
        bits.set(20)
        assert len(bits) == 24

    def test_encode_pads_to_minimum_and_decodes(self) -> None:
        bits = Bitstring.zeroed(8)
        bits.set(5)
        encoded = bits.encode(min_bits=131072)
        assert encoded.startswith("u")
        assert "=" not in encoded
        decoded = Bitstring.decode(encoded)
        assert len(decoded) == 131072
        assert decoded.get(5)
        assert not decoded.get(4)

    def test_encoding_is_deterministic(self) -> None:
        bits = Bitstring.zeroed(64)
        bits.set(42)
        assert bits.encode(131072) == Bitstring(bits.to_bytes()).encode(131072)

    def test_decode_rejects_non_gzip(self) -> None:
        with pytest.raises(ValidationError, match="gzip"):
            Bitstring.decode("uAAAA")

    def test_decode_caps_expanded_size(self) -> None:
        encoded = Bitstring(bytes(4096)).encode()
        assert len(Bitstring.decode(encoded, max_bytes=4096)) == 4096 * 8
        with pytest.raises(ValidationError, match="expands beyond 1024 bytes"):
            Bitstring.decode(encoded, max_bytes=1024)

    def test_decode_rejects_truncated_stream(self) -> None:
        truncated = gzip.compress(bytes(64), mtime=0)[:-4]
        with pytest.raises(ValidationError, match="truncated"):
            Bitstring.decode(encode_base64url(truncated))


class TestParseStatusEntry:
    def _entry(self, **overrides: object) -> dict[str, object]:
        entry: dict[str, object] = {
            "id": "https://badges.example.org/status-lists/x#3",
            "type": "BitstringStatusListEntry",
            "statusPurpose": "revocation",
            "statusListIndex": "3",
            "statusListCredential": "https://badges.example.org/status-lists/x",
        }
        entry.update(overrides)
        return entry

    def test_valid_entry(self) -> None:
        assert parse_status_entry(self._entry()) == (
            "https://badges.example.org/status-lists/x",
            3,
        )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"type": "StatusList2021Entry"},
            {"statusPurpose": "suspension"},
            {"statusListIndex": "-1"},
            {"statusListIndex": 3},
            {"statusListIndex": "three"},
            {"statusListCredential": ""},
        ],
    )
    def test_invalid_entries_rejected(self, overrides: dict[str, object]) -> None:
        with pytest.raises(ValidationError):
            parse_status_entry(self._entry(**overrides))

    def test_non_object_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_status_entry(["not", "an", "entry"])


@pytest.fixture
def manager(service: CredentialService) -> StatusListManager:
    return service.status_lists


async def _saved_assertion(
    store: InMemoryCredentialStore, issuer: IssuerRecord, achievement: AchievementRecord
) -> AssertionRecord:
    return await store.save_assertion(
        AssertionRecord(
            achievement_id=achievement.id,
            issuer_id=issuer.id,
            recipient_identity="learner@example.com",
            recipient_salt="salt",
        )
    )


class TestAllocation:
    @pytest.mark.asyncio
    async def test_sequential_indices(
        self, manager: StatusListManager, issuer: IssuerRecord
    ) -> None:
        assert [await manager.allocate_index(issuer.id) for _ in range(3)] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_concurrent_allocation_is_unique_and_dense(
        self, manager: StatusListManager, issuer: IssuerRecord
    ) -> None:
        indices = await asyncio.gather(*(manager.allocate_index(issuer.id) for _ in range(25)))
        assert sorted(indices) == list(range(25))

    @pytest.mark.asyncio
    async def test_issuers_have_independent_counters(
        self, manager: StatusListManager, issuer: IssuerRecord, other_issuer: IssuerRecord
    ) -> None:
        await manager.allocate_index(issuer.id)
        await manager.allocate_index(issuer.id)
        assert await manager.allocate_index(other_issuer.id) == 0

    @pytest.mark.asyncio
    async def test_credential_keeps_its_index(
        self,
        manager: StatusListManager,
        store: InMemoryCredentialStore,
        issuer: IssuerRecord,
        achievement: AchievementRecord,
    ) -> None:
        assertion = await _saved_assertion(store, issuer, achievement)
        first = await manager.allocate_index(issuer.id, credential_id=assertion.id)
        second = await manager.allocate_index(issuer.id, credential_id=assertion.id)
        assert first == second == 0
        stored = await store.get_assertion(assertion.id)
        assert stored is not None and stored.status_index == 0
        assert await manager.allocate_index(issuer.id) == 1

    @pytest.mark.asyncio
    async def test_credential_of_other_issuer_rejected(
        self,
        manager: StatusListManager,
        store: InMemoryCredentialStore,
        issuer: IssuerRecord,
        other_issuer: IssuerRecord,
        achievement: AchievementRecord,
    ) -> None:
        assertion = await _saved_assertion(store, issuer, achievement)
        with pytest.raises(ValidationError):
            await manager.allocate_index(other_issuer.id, credential_id=assertion.id)

    @pytest.mark.asyncio
    async def test_unknown_issuer(self, manager: StatusListManager) -> None:
        with pytest.raises(NotFoundError):
            await manager.allocate_index(uuid4())

    @pytest.mark.asyncio
    async def test_list_grows_past_minimum(
        self, store: InMemoryCredentialStore, encryptor: KeyMaterialEncryptor, issuer: IssuerRecord
    ) -> None:
        settings = Settings(
            public_base_url="https://badges.example.org",
            encryption_master_key="A" * 43 + "=",
            status_list_min_bits=8,
        )
        manager = CredentialService(store, encryptor, settings).status_lists
        for _ in range(10):
            await manager.allocate_index(issuer.id)
        record = await store.get_status_list(issuer.id)
        assert record is not None
        assert len(record.bitstring) == 2
        assert record.next_index == 10


class TestRegistration:
    @pytest.mark.asyncio
    async def test_assertion_stored_with_its_index(
        self,
        manager: StatusListManager,
        store: InMemoryCredentialStore,
        issuer: IssuerRecord,
        achievement: AchievementRecord,
    ) -> None:
        numbered = []
        for n in range(2):
            record = AssertionRecord(
                achievement_id=achievement.id,
                issuer_id=issuer.id,
                recipient_identity=f"learner{n}@example.com",
            )
            numbered.append(await manager.register_assertion(record))

        assert [record.status_index for record in numbered] == [0, 1]
        stored = await store.get_assertion(numbered[1].id)
        assert stored is not None
        assert stored.status_index == 1
        assert not stored.issued
        status_list = await store.get_status_list(issuer.id)
        assert status_list is not None and status_list.next_index == 2

    @pytest.mark.asyncio
    async def test_duplicate_assertion_rejected(
        self,
        manager: StatusListManager,
        store: InMemoryCredentialStore,
        issuer: IssuerRecord,
        achievement: AchievementRecord,
    ) -> None:
        record = AssertionRecord(
            achievement_id=achievement.id,
            issuer_id=issuer.id,
            recipient_identity="learner@example.com",
        )
        await manager.register_assertion(record)
        with pytest.raises(StorageConflictError, match="already exists"):
            await manager.register_assertion(record)
        status_list = await store.get_status_list(issuer.id)
        assert status_list is not None and status_list.next_index == 1

    @pytest.mark.asyncio
    async def test_unknown_issuer(
        self, manager: StatusListManager, achievement: AchievementRecord
    ) -> None:
        record = AssertionRecord(
            achievement_id=achievement.id, issuer_id=uuid4(), recipient_identity="x@example.com"
        )
        with pytest.raises(NotFoundError):
            await manager.register_assertion(record)


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoke_and_reinstate(
        self, manager: StatusListManager, issuer: IssuerRecord
    ) -> None:
        for _ in range(3):
            await manager.allocate_index(issuer.id)

        await manager.set_revoked(issuer.id, 1, True)
        assert await manager.is_revoked(issuer.id, 1)
        assert not await manager.is_revoked(issuer.id, 0)
        assert not await manager.is_revoked(issuer.id, 2)

        await manager.set_revoked(issuer.id, 1, False)
        assert not await manager.is_revoked(issuer.id, 1)

    @pytest.mark.asyncio
    async def test_revocation_is_per_issuer(
        self, manager: StatusListManager, issuer: IssuerRecord, other_issuer: IssuerRecord
    ) -> None:
        await manager.allocate_index(issuer.id)
        await manager.allocate_index(other_issuer.id)
        await manager.set_revoked(issuer.id, 0, True)
        assert not await manager.is_revoked(other_issuer.id, 0)

    @pytest.mark.asyncio
    async def test_unallocated_index_rejected(
        self, manager: StatusListManager, issuer: IssuerRecord
    ) -> None:
        await manager.allocate_index(issuer.id)
        with pytest.raises(RevocationError, match="never allocated"):
            await manager.set_revoked(issuer.id, 5, True)

    @pytest.mark.asyncio
    async def test_issuer_without_list_rejected(
        self, manager: StatusListManager, issuer: IssuerRecord
    ) -> None:
        with pytest.raises(RevocationError, match="no status list"):
            await manager.set_revoked(issuer.id, 0, True)
        with pytest.raises(RevocationError):
            await manager.is_revoked(issuer.id, 0)

    @pytest.mark.asyncio
    async def test_assertion_flag_follows_bit(
        self,
        manager: StatusListManager,
        store: InMemoryCredentialStore,
        issuer: IssuerRecord,
        achievement: AchievementRecord,
    ) -> None:
        assertion = await _saved_assertion(store, issuer, achievement)
        index = await manager.allocate_index(issuer.id, credential_id=assertion.id)
        await manager.set_revoked(issuer.id, index, True, reason="Issued in error")

        stored = await store.get_assertion(assertion.id)
        assert stored is not None
        assert stored.revoked
        assert stored.revocation_reason == "Issued in error"
        assert stored.revoked_at is not None

    @pytest.mark.asyncio
    async def test_resigned_list_reflects_bit(
        self, manager: StatusListManager, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        await manager.allocate_index(issuer.id)
        await manager.allocate_index(issuer.id)
        document = await manager.set_revoked(issuer.id, 1, True)

        assert await service.proofs.verify(document)
        bits = decode_status_list_credential(document)
        assert bits.get(1)
        assert not bits.get(0)
        assert document == await manager.get_status_list_credential(issuer.id)


class TestPublication:
    @pytest.mark.asyncio
    async def test_first_request_creates_signed_empty_list(
        self, manager: StatusListManager, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        document = await manager.get_status_list_credential(issuer.id)
        url = service.urls.status_list(issuer.id)
        assert document["id"] == url
        assert document["type"] == ["VerifiableCredential", "BitstringStatusListCredential"]
        assert document["credentialSubject"]["id"] == f"{url}#list"
        assert document["credentialSubject"]["statusPurpose"] == "revocation"
        assert len(decode_status_list_credential(document)) == 131072
        assert await service.proofs.verify(document)

    @pytest.mark.asyncio
    async def test_resolve_entry(self, manager: StatusListManager, issuer: IssuerRecord) -> None:
        index = await manager.allocate_index(issuer.id)
        entry = manager.status_entry(issuer.id, index).model_dump(by_alias=True)
        assert await manager.resolve_entry(entry) == (issuer.id, index)

    @pytest.mark.asyncio
    async def test_resolve_unknown_list(self, manager: StatusListManager) -> None:
        entry = {
            "id": "https://elsewhere.example/lists/1#0",
            "type": "BitstringStatusListEntry",
            "statusPurpose": "revocation",
            "statusListIndex": "0",
            "statusListCredential": "https://elsewhere.example/lists/1",
        }
        with pytest.raises(RevocationError, match="unknown status list"):
            await manager.resolve_entry(entry)


class _FlakyStore(InMemoryCredentialStore):
    """Reports a concurrent writer on the first ``failures`` transactions."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    @asynccontextmanager
    async def status_list_transaction(self, issuer_id: UUID) -> AsyncIterator[object]:
        if self.failures:
            self.failures -= 1
            raise StorageConflictError("simulated concurrent writer")
        async with super().status_list_transaction(issuer_id) as tx:
            yield tx


class _LockAwareStore(InMemoryCredentialStore):
    """Records issuer and key reads made while a list transaction is open."""

    def __init__(self) -> None:
        super().__init__()
        self.in_transaction = False
        self.reads_under_lock: list[str] = []

    def _record(self, name: str) -> None:
        if self.in_transaction:
            self.reads_under_lock.append(name)

    async def get_issuer(self, issuer_id: UUID) -> IssuerRecord | None:
        self._record("get_issuer")
        return await super().get_issuer(issuer_id)

    async def get_active_signing_key(self, issuer_id: UUID) -> SigningKeyRecord | None:
        self._record("get_active_signing_key")
        return await super().get_active_signing_key(issuer_id)

    @asynccontextmanager
    async def status_list_transaction(self, issuer_id: UUID) -> AsyncIterator[object]:
        async with super().status_list_transaction(issuer_id) as tx:
            self.in_transaction = True
            try:
                yield tx
            finally:
                self.in_transaction = False


class TestSigningUnderLock:
    @pytest.mark.asyncio
    async def test_list_writes_resolve_issuer_and_key_first(
        self, encryptor: KeyMaterialEncryptor, settings: Settings
    ) -> None:
        store = _LockAwareStore()
        issuer = await store.add_issuer(IssuerRecord(name="Locked", url="https://locked.test"))
        achievement = await store.add_achievement(
            AchievementRecord(issuer_id=issuer.id, name="A", description="A", criteria="A")
        )
        manager = CredentialService(store, encryptor, settings).status_lists

        await manager.get_status_list_credential(issuer.id)
        index = await manager.allocate_index(issuer.id)
        await manager.register_assertion(
            AssertionRecord(
                achievement_id=achievement.id,
                issuer_id=issuer.id,
                recipient_identity="learner@example.com",
            )
        )
        await manager.set_revoked(issuer.id, index, True)

        assert store.reads_under_lock == []


class TestConflictRetry:
    @pytest.mark.asyncio
    async def test_transient_conflicts_are_retried(
        self, encryptor: KeyMaterialEncryptor, settings: Settings
    ) -> None:
        store = _FlakyStore(failures=2)
        issuer = await store.add_issuer(IssuerRecord(name="Flaky", url="https://flaky.test"))
        manager = CredentialService(store, encryptor, settings).status_lists
        assert await manager.allocate_index(issuer.id) == 0
        assert store.failures == 0

    @pytest.mark.asyncio
    async def test_persistent_conflict_surfaces(
        self, encryptor: KeyMaterialEncryptor, settings: Settings
    ) -> None:
        store = _FlakyStore(failures=settings.status_list_max_retries)
        issuer = await store.add_issuer(IssuerRecord(name="Flaky", url="https://flaky.test"))
        manager = CredentialService(store, encryptor, settings).status_lists
        with pytest.raises(StorageConflictError):
            await manager.allocate_index(issuer.id)
