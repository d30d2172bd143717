"""Storage collaborator contract and an in-process implementation.

The engine never touches a database directly; everything persistent flows
through ``CredentialStore``. Status-list mutation happens exclusively inside
``status_list_transaction`` so that the bitstring, its allocation counter,
the credential's index and revocation flag commit as one unit.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any, Protocol, TypeVar
from uuid import UUID

from pydantic import BaseModel

from badge_engine.core.errors import NotFoundError, StorageConflictError
from badge_engine.modules.credentials.schemas import (
    AchievementRecord,
    AssertionRecord,
    IssuerRecord,
    SigningKeyRecord,
    StatusListRecord,
    utcnow,
)


_RecordT = TypeVar("_RecordT", bound=BaseModel)


class StatusListTransaction(Protocol):
    """Single-writer view of one issuer's status list.

    ``record`` is ``None`` until the issuer's list is first saved. Nothing is
    visible to other readers until the surrounding context exits cleanly.
    """

    record: StatusListRecord | None

    async def get_assertion(self, credential_id: UUID) -> AssertionRecord | None: ...

    async def save(self, record: StatusListRecord) -> None: ...

    async def add_assertion(self, record: AssertionRecord) -> None:
        """Insert a new assertion; it commits only together with the list."""
        ...

    async def assign_status_index(self, credential_id: UUID, index: int) -> None: ...

    async def mark_revocation(
        self, index: int, *, revoked: bool, reason: str | None, at: datetime
    ) -> AssertionRecord | None: ...


class CredentialStore(Protocol):
    async def get_issuer(self, issuer_id: UUID) -> IssuerRecord | None: ...
    async def get_achievement(self, achievement_id: UUID) -> AchievementRecord | None: ...
    async def get_assertion(self, assertion_id: UUID) -> AssertionRecord | None: ...
    async def publish_assertion(
        self, assertion_id: UUID, document: dict[str, Any] | None = None
    ) -> None:
        """Mark an assertion issued, storing its signed document when given."""
        ...

    async def get_active_signing_key(self, issuer_id: UUID) -> SigningKeyRecord | None: ...

    async def get_signing_key_by_verification_method(
        self, verification_method: str
    ) -> SigningKeyRecord | None: ...

    async def create_signing_key_if_absent(self, record: SigningKeyRecord) -> SigningKeyRecord:
        """Insert ``record`` unless the issuer already has an active key.

        Returns whichever record is active afterwards, so concurrent first-time
        callers all observe the same key.
        """
        ...

    async def rotate_signing_key(self, record: SigningKeyRecord) -> SigningKeyRecord | None:
        """Deactivate the issuer's active key and make ``record`` the active one.

        Single writer per issuer. Returns the key that was deactivated, if any;
        deactivated keys stay resolvable by verification method.
        """
        ...

    async def update_signing_key_material(
        self, key_id: UUID, encrypted_private_key: str
    ) -> None: ...

    async def get_status_list(self, issuer_id: UUID) -> StatusListRecord | None: ...
    async def get_status_list_by_url(self, url: str) -> StatusListRecord | None: ...

    def status_list_transaction(
        self, issuer_id: UUID
    ) -> AbstractAsyncContextManager[StatusListTransaction]: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class _InMemoryStatusListTransaction:
    def __init__(self, store: InMemoryCredentialStore, issuer_id: UUID) -> None:
        self._store = store
        self._issuer_id = issuer_id
        current = store._status_lists.get(issuer_id)
        self.record: StatusListRecord | None = (
            current.model_copy(deep=True) if current is not None else None
        )
        self._base_version = current.version if current is not None else None
        self._pending_record: StatusListRecord | None = None
        self._pending_assertions: dict[UUID, AssertionRecord] = {}

    async def get_assertion(self, credential_id: UUID) -> AssertionRecord | None:
        pending = self._pending_assertions.get(credential_id)
        if pending is not None:
            return pending.model_copy(deep=True)
        return await self._store.get_assertion(credential_id)

    async def save(self, record: StatusListRecord) -> None:
        self._pending_record = record.model_copy(deep=True)
        self.record = record

    async def add_assertion(self, record: AssertionRecord) -> None:
        if record.id in self._store._assertions or record.id in self._pending_assertions:
            raise StorageConflictError(f"assertion {record.id} already exists")
        if record.status_index is not None:
            self._check_index_free(record.id, record.status_index)
        self._pending_assertions[record.id] = record.model_copy(deep=True)

    async def assign_status_index(self, credential_id: UUID, index: int) -> None:
        assertion = self._pending_assertions.get(credential_id)
        if assertion is None:
            stored = self._store._assertions.get(credential_id)
            if stored is None:
                raise NotFoundError(f"assertion {credential_id} not found")
            assertion = stored.model_copy(deep=True)
        self._check_index_free(credential_id, index)
        assertion.status_index = index
        self._pending_assertions[credential_id] = assertion

    def _check_index_free(self, credential_id: UUID, index: int) -> None:
        for other in [*self._store._assertions.values(), *self._pending_assertions.values()]:
            if (
                other.id != credential_id
                and other.issuer_id == self._issuer_id
                and other.status_index == index
            ):
                raise StorageConflictError(
                    f"status index {index} already held by assertion {other.id}"
                )

    async def mark_revocation(
        self, index: int, *, revoked: bool, reason: str | None, at: datetime
    ) -> AssertionRecord | None:
        target = next(
            (
                a
                for a in [*self._pending_assertions.values(), *self._store._assertions.values()]
                if a.issuer_id == self._issuer_id and a.status_index == index
            ),
            None,
        )
        if target is None:
            return None
        updated = target.model_copy(deep=True)
        updated.revoked = revoked
        updated.revocation_reason = reason if revoked else None
        updated.revoked_at = at if revoked else None
        self._pending_assertions[updated.id] = updated
        return updated.model_copy(deep=True)

    def _commit(self) -> None:
        current = self._store._status_lists.get(self._issuer_id)
        current_version = current.version if current is not None else None
        if current_version != self._base_version:
            raise StorageConflictError(
                f"status list for issuer {self._issuer_id} changed concurrently"
            )
        if self._pending_record is not None:
            committed = self._pending_record
            committed.version = (self._base_version or 0) + 1
            committed.updated_at = utcnow()
            self._store._status_lists[self._issuer_id] = committed
            if self.record is not None:
                self.record.version = committed.version
        for assertion in self._pending_assertions.values():
            self._store._assertions[assertion.id] = assertion


class InMemoryCredentialStore:
    """Satisfies the CredentialStore Protocol in process memory.

    Status-list transactions are serialized per issuer with an ``asyncio.Lock``;
    the version check on commit still guards writers that bypass the lock.
    """

    def __init__(self) -> None:
        self._issuers: dict[UUID, IssuerRecord] = {}
        self._achievements: dict[UUID, AchievementRecord] = {}
        self._assertions: dict[UUID, AssertionRecord] = {}
        # keyed by key id; at most one active record per issuer
        self._keys: dict[UUID, SigningKeyRecord] = {}
        self._status_lists: dict[UUID, StatusListRecord] = {}
        self._locks: dict[UUID, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Seeding (issuer and achievement management lives outside the engine)
    # ------------------------------------------------------------------

    async def add_issuer(self, record: IssuerRecord) -> IssuerRecord:
        self._issuers[record.id] = record.model_copy(deep=True)
        return record

    async def add_achievement(self, record: AchievementRecord) -> AchievementRecord:
        self._achievements[record.id] = record.model_copy(deep=True)
        return record

    async def save_assertion(self, record: AssertionRecord) -> AssertionRecord:
        self._assertions[record.id] = record.model_copy(deep=True)
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_issuer(self, issuer_id: UUID) -> IssuerRecord | None:
        return _copy(self._issuers.get(issuer_id))

    async def get_achievement(self, achievement_id: UUID) -> AchievementRecord | None:
        return _copy(self._achievements.get(achievement_id))

    async def get_assertion(self, assertion_id: UUID) -> AssertionRecord | None:
        return _copy(self._assertions.get(assertion_id))

    async def get_active_signing_key(self, issuer_id: UUID) -> SigningKeyRecord | None:
        return _copy(self._active_key(issuer_id))

    async def get_signing_key_by_verification_method(
        self, verification_method: str
    ) -> SigningKeyRecord | None:
        for record in self._keys.values():
            if record.verification_method == verification_method:
                return _copy(record)
        return None

    async def get_status_list(self, issuer_id: UUID) -> StatusListRecord | None:
        return _copy(self._status_lists.get(issuer_id))

    async def get_status_list_by_url(self, url: str) -> StatusListRecord | None:
        for record in self._status_lists.values():
            if record.url == url:
                return _copy(record)
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def publish_assertion(
        self, assertion_id: UUID, document: dict[str, Any] | None = None
    ) -> None:
        stored = self._assertions.get(assertion_id)
        if stored is None:
            raise NotFoundError(f"assertion {assertion_id} not found")
        updated = stored.model_copy(deep=True)
        updated.issued = True
        if document is not None:
            updated.document = copy.deepcopy(document)
        self._assertions[assertion_id] = updated

    async def create_signing_key_if_absent(self, record: SigningKeyRecord) -> SigningKeyRecord:
        existing = self._active_key(record.issuer_id)
        if existing is not None:
            return existing.model_copy(deep=True)
        self._keys[record.id] = record.model_copy(deep=True)
        return record

    async def rotate_signing_key(self, record: SigningKeyRecord) -> SigningKeyRecord | None:
        previous = self._active_key(record.issuer_id)
        if previous is not None:
            previous.active = False
        self._keys[record.id] = record.model_copy(update={"active": True}, deep=True)
        return _copy(previous)

    async def update_signing_key_material(
        self, key_id: UUID, encrypted_private_key: str
    ) -> None:
        stored = self._keys.get(key_id)
        if stored is None:
            raise NotFoundError(f"signing key {key_id} not found")
        self._keys[key_id] = stored.model_copy(
            update={"encrypted_private_key": encrypted_private_key}
        )

    @asynccontextmanager
    async def status_list_transaction(
        self, issuer_id: UUID
    ) -> AsyncIterator[_InMemoryStatusListTransaction]:
        lock = self._locks.setdefault(issuer_id, asyncio.Lock())
        async with lock:
            tx = _InMemoryStatusListTransaction(self, issuer_id)
            yield tx
            tx._commit()

    def _active_key(self, issuer_id: UUID) -> SigningKeyRecord | None:
        return next(
            (k for k in self._keys.values() if k.issuer_id == issuer_id and k.active), None
        )


def _copy(record: _RecordT | None) -> _RecordT | None:
    return record.model_copy(deep=True) if record is not None else None
