"""SQLAlchemy implementation of CredentialStore."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from badge_engine.core.errors import NotFoundError, StorageConflictError, StorageError
from badge_engine.core.logging import get_logger
from badge_engine.db.models import Achievement, Assertion, Issuer, SigningKey, StatusList
from badge_engine.modules.credentials.schemas import (
    AchievementRecord,
    AssertionRecord,
    IssuerRecord,
    SigningKeyRecord,
    StatusListRecord,
)

logger = get_logger(__name__)


def _assertion_values(record: AssertionRecord) -> dict[str, Any]:
    values = record.model_dump()
    values["recipient_type"] = record.recipient_type.value
    return values


class _SqlStatusListTransaction:
    """Row-locked status list view bound to one open session transaction."""

    def __init__(self, session: AsyncSession, issuer_id: UUID, row: StatusList | None) -> None:
        self._session = session
        self._issuer_id = issuer_id
        self._row_id = row.id if row is not None else None
        self._base_version = row.version if row is not None else None
        self.record: StatusListRecord | None = (
            StatusListRecord.model_validate(row) if row is not None else None
        )
        self._pending: StatusListRecord | None = None

    async def get_assertion(self, credential_id: UUID) -> AssertionRecord | None:
        row = await self._session.get(Assertion, credential_id)
        return AssertionRecord.model_validate(row) if row is not None else None

    async def save(self, record: StatusListRecord) -> None:
        self._pending = record.model_copy(deep=True)
        self.record = record

    async def add_assertion(self, record: AssertionRecord) -> None:
        self._session.add(Assertion(**_assertion_values(record)))
        await self._session.flush()

    async def assign_status_index(self, credential_id: UUID, index: int) -> None:
        result = await self._session.execute(
            update(Assertion)
            .where(Assertion.id == credential_id, Assertion.issuer_id == self._issuer_id)
            .values(status_index=index)
        )
        if result.rowcount != 1:
            raise NotFoundError(f"assertion {credential_id} not found for issuer {self._issuer_id}")

    async def mark_revocation(
        self, index: int, *, revoked: bool, reason: str | None, at: datetime
    ) -> AssertionRecord | None:
        row = (
            await self._session.execute(
                select(Assertion)
                .where(Assertion.issuer_id == self._issuer_id, Assertion.status_index == index)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if row is None:
            return None
        row.revoked = revoked
        row.revocation_reason = reason if revoked else None
        row.revoked_at = at if revoked else None
        await self._session.flush()
        return AssertionRecord.model_validate(row)

    async def flush(self) -> None:
        if self._pending is None:
            return
        pending = self._pending
        if self._row_id is None:
            self._session.add(
                StatusList(
                    id=pending.id,
                    issuer_id=self._issuer_id,
                    url=pending.url,
                    bitstring=pending.bitstring,
                    next_index=pending.next_index,
                    document=pending.document,
                    version=1,
                )
            )
            await self._session.flush()
            new_version = 1
        else:
            assert self._base_version is not None
            new_version = self._base_version + 1
            result = await self._session.execute(
                update(StatusList)
                .where(StatusList.id == self._row_id, StatusList.version == self._base_version)
                .values(
                    bitstring=pending.bitstring,
                    next_index=pending.next_index,
                    document=pending.document,
                    version=new_version,
                )
            )
            if result.rowcount != 1:
                raise StorageConflictError(
                    f"status list for issuer {self._issuer_id} changed concurrently"
                )
        if self.record is not None:
            self.record.version = new_version


class SqlAlchemyCredentialStore:
    """Satisfies the CredentialStore Protocol using an async SQLAlchemy engine.

    Status-list transactions take a ``SELECT ... FOR UPDATE`` row lock and
    additionally compare the ``version`` column on write; a first insert race
    surfaces through the unique constraint on ``issuer_id``. Both outcomes are
    reported as ``StorageConflictError`` so callers can retry.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def add_issuer(self, record: IssuerRecord) -> IssuerRecord:
        async with self._write_session() as session:
            session.add(Issuer(**record.model_dump()))
        return record

    async def add_achievement(self, record: AchievementRecord) -> AchievementRecord:
        async with self._write_session() as session:
            session.add(Achievement(**record.model_dump()))
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_issuer(self, issuer_id: UUID) -> IssuerRecord | None:
        row = await self._get(Issuer, issuer_id)
        return IssuerRecord.model_validate(row) if row is not None else None

    async def get_achievement(self, achievement_id: UUID) -> AchievementRecord | None:
        row = await self._get(Achievement, achievement_id)
        return AchievementRecord.model_validate(row) if row is not None else None

    async def get_assertion(self, assertion_id: UUID) -> AssertionRecord | None:
        row = await self._get(Assertion, assertion_id)
        return AssertionRecord.model_validate(row) if row is not None else None

    async def get_active_signing_key(self, issuer_id: UUID) -> SigningKeyRecord | None:
        stmt = select(SigningKey).where(SigningKey.issuer_id == issuer_id, SigningKey.active)
        row = await self._scalar(stmt)
        return SigningKeyRecord.model_validate(row) if row is not None else None

    async def get_signing_key_by_verification_method(
        self, verification_method: str
    ) -> SigningKeyRecord | None:
        stmt = select(SigningKey).where(SigningKey.verification_method == verification_method)
        row = await self._scalar(stmt)
        return SigningKeyRecord.model_validate(row) if row is not None else None

    async def get_status_list(self, issuer_id: UUID) -> StatusListRecord | None:
        row = await self._scalar(select(StatusList).where(StatusList.issuer_id == issuer_id))
        return StatusListRecord.model_validate(row) if row is not None else None

    async def get_status_list_by_url(self, url: str) -> StatusListRecord | None:
        row = await self._scalar(select(StatusList).where(StatusList.url == url))
        return StatusListRecord.model_validate(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def publish_assertion(
        self, assertion_id: UUID, document: dict[str, Any] | None = None
    ) -> None:
        values: dict[str, Any] = {"issued": True}
        if document is not None:
            values["document"] = document
        async with self._write_session() as session:
            result = await session.execute(
                update(Assertion).where(Assertion.id == assertion_id).values(**values)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"assertion {assertion_id} not found")

    async def create_signing_key_if_absent(self, record: SigningKeyRecord) -> SigningKeyRecord:
        existing = await self.get_active_signing_key(record.issuer_id)
        if existing is not None:
            return existing
        try:
            async with self._write_session() as session:
                session.add(SigningKey(**record.model_dump()))
        except StorageConflictError:
            logger.info("signing_key_insert_lost_race", issuer_id=str(record.issuer_id))
            winner = await self.get_active_signing_key(record.issuer_id)
            if winner is None:
                raise
            return winner
        return record

    async def rotate_signing_key(self, record: SigningKeyRecord) -> SigningKeyRecord | None:
        async with self._write_session() as session:
            # the issuer row lock serializes rotations for one issuer
            await session.execute(
                select(Issuer.id).where(Issuer.id == record.issuer_id).with_for_update()
            )
            previous = (
                await session.execute(
                    select(SigningKey).where(
                        SigningKey.issuer_id == record.issuer_id, SigningKey.active
                    )
                )
            ).scalar_one_or_none()
            if previous is not None:
                previous.active = False
                await session.flush()
            session.add(SigningKey(**record.model_dump(exclude={"active"}), active=True))
            return SigningKeyRecord.model_validate(previous) if previous is not None else None

    async def update_signing_key_material(
        self, key_id: UUID, encrypted_private_key: str
    ) -> None:
        async with self._write_session() as session:
            result = await session.execute(
                update(SigningKey)
                .where(SigningKey.id == key_id)
                .values(encrypted_private_key=encrypted_private_key)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"signing key {key_id} not found")

    @asynccontextmanager
    async def status_list_transaction(
        self, issuer_id: UUID
    ) -> AsyncIterator[_SqlStatusListTransaction]:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    row = (
                        await session.execute(
                            select(StatusList)
                            .where(StatusList.issuer_id == issuer_id)
                            .with_for_update()
                        )
                    ).scalar_one_or_none()
                    tx = _SqlStatusListTransaction(session, issuer_id, row)
                    yield tx
                    await tx.flush()
            except IntegrityError as exc:
                raise StorageConflictError(
                    f"status list write for issuer {issuer_id} conflicted"
                ) from exc
            except SQLAlchemyError as exc:
                raise StorageError(f"status list transaction failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _write_session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except IntegrityError as exc:
                raise StorageConflictError(f"write conflicted: {exc.orig}") from exc
            except SQLAlchemyError as exc:
                raise StorageError(f"write failed: {exc}") from exc

    async def _get(self, model: type[Any], key: UUID) -> Any:
        try:
            async with self._session_factory() as session:
                return await session.get(model, key)
        except SQLAlchemyError as exc:
            raise StorageError(f"read of {model.__tablename__} failed: {exc}") from exc

    async def _scalar(self, stmt: Any) -> Any:
        try:
            async with self._session_factory() as session:
                return (await session.execute(stmt)).scalars().first()
        except SQLAlchemyError as exc:
            raise StorageError(f"query failed: {exc}") from exc
