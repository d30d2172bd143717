"""
SQLAlchemy ORM models for the badge engine.
Identifiers are client-generated UUIDs so in-memory and SQL stores agree.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


# =============================================================================
# Issuers and Achievements
# =============================================================================


class Issuer(Base):
    """Issuing organization; managed outside the engine, read here."""

    __tablename__ = "issuers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320))
    description: Mapped[str | None] = mapped_column(Text)
    image: Mapped[str | None] = mapped_column(String(2048))
    did: Mapped[str | None] = mapped_column(
        String(512),
        comment="Issuer DID; when null the hosted profile URL is the issuer IRI",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    achievements: Mapped[list["Achievement"]] = relationship(back_populates="issuer")


class Achievement(Base):
    """Badge definition rendered as BadgeClass (OB2) or Achievement (OB3)."""

    __tablename__ = "achievements"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    issuer_id: Mapped[UUID] = mapped_column(
        ForeignKey("issuers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    criteria: Mapped[str] = mapped_column(Text, nullable=False, comment="Criteria narrative")
    criteria_url: Mapped[str | None] = mapped_column(String(2048))
    image: Mapped[str | None] = mapped_column(String(2048))
    tags: Mapped[list[str]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        default=list,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    issuer: Mapped["Issuer"] = relationship(back_populates="achievements")


# =============================================================================
# Issued Credentials
# =============================================================================


class Assertion(Base):
    """
    An issued credential.

    Rows are never deleted. A row is inserted together with its
    ``status_index`` inside the issuer's status-list transaction; ``issued``
    flips once the rendered credential has been stored.
    """

    __tablename__ = "assertions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    achievement_id: Mapped[UUID] = mapped_column(
        ForeignKey("achievements.id", ondelete="RESTRICT"),
        nullable=False,
    )
    issuer_id: Mapped[UUID] = mapped_column(
        ForeignKey("issuers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_identity: Mapped[str] = mapped_column(String(512), nullable=False)
    recipient_hashed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    recipient_salt: Mapped[str | None] = mapped_column(String(128))
    issued_on: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    evidence_url: Mapped[str | None] = mapped_column(String(2048))
    narrative: Mapped[str | None] = mapped_column(Text)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revocation_reason: Mapped[str | None] = mapped_column(Text)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status_index: Mapped[int | None] = mapped_column(Integer)
    document: Mapped[dict[str, Any] | None] = mapped_column(
        comment="Last signed OB3 document, served as-is on render",
    )
    issued: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("issuer_id", "status_index", name="uq_assertions_issuer_status_index"),
        Index("ix_assertions_issuer_id", "issuer_id"),
        Index("ix_assertions_achievement_id", "achievement_id"),
    )


# =============================================================================
# Signing Keys
# =============================================================================


class SigningKey(Base):
    """Issuer Ed25519 keypair; private half is an ``enc:v2`` token."""

    __tablename__ = "signing_keys"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    issuer_id: Mapped[UUID] = mapped_column(
        ForeignKey("issuers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    algorithm: Mapped[str] = mapped_column(String(32), default="Ed25519", nullable=False)
    public_key_multibase: Mapped[str] = mapped_column(String(128), nullable=False)
    verification_method: Mapped[str] = mapped_column(String(512), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        # at most one active key per issuer; a losing concurrent insert hits this
        Index(
            "uq_signing_keys_active_issuer",
            "issuer_id",
            unique=True,
            postgresql_where=text("active"),
        ),
        Index("ix_signing_keys_verification_method", "verification_method"),
    )


# =============================================================================
# Status Lists
# =============================================================================


class StatusList(Base):
    """Per-issuer revocation bitstring with an optimistic-lock version."""

    __tablename__ = "status_lists"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    issuer_id: Mapped[UUID] = mapped_column(
        ForeignKey("issuers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    bitstring: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    next_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    document: Mapped[dict[str, Any] | None] = mapped_column()
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("issuer_id", name="uq_status_lists_issuer_id"),
        UniqueConstraint("url", name="uq_status_lists_url"),
    )
