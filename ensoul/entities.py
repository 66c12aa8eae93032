# ensoul/entities.py
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()

JsonDocument = JSON().with_variant(JSONB(), "postgresql")

STAGE_EMBRYO = "embryo"
STAGE_GROWING = "growing"
STAGE_MATURE = "mature"
STAGE_EVOLVING = "evolving"

FRAG_STATUS_PENDING = "pending"
FRAG_STATUS_ACCEPTED = "accepted"
FRAG_STATUS_REJECTED = "rejected"

CLAW_STATUS_PENDING_CLAIM = "pending_claim"
CLAW_STATUS_CLAIMED = "claimed"

CHAT_TIER_GUEST = "guest"
CHAT_TIER_FREE = "free"


def utcnow() -> datetime:
    # naive UTC, identical on SQLite and Postgres
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid4())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class Soul(Base, TimestampMixin):
    __tablename__ = "souls"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    handle: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    owner_addr: Mapped[str] = mapped_column(String(42), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255))
    avatar_url: Mapped[str | None] = mapped_column(Text)

    stage: Mapped[str] = mapped_column(String(20), nullable=False, default=STAGE_EMBRYO)
    profile_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    seed_summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # fixed six-key record, see ensoul.profile.DimensionProfile
    dimensions: Mapped[dict[str, object]] = mapped_column(JsonDocument, nullable=False, default=dict)

    total_frags: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accepted_frags: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_claws: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_chats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # durable on-chain identifier: written at most once
    agent_id: Mapped[int | None] = mapped_column(BigInteger)
    mint_tx_hash: Mapped[str | None] = mapped_column(String(66))

    __table_args__ = (
        Index("ix_souls_owner_addr", "owner_addr"),
    )


class Claw(Base):
    __tablename__ = "claws"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    api_key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    claim_code: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    verification_code: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CLAW_STATUS_PENDING_CLAIM)

    # set only by the claim flow
    wallet_addr: Mapped[str | None] = mapped_column(String(42))
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime)

    total_submitted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_accepted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    earnings: Mapped[float] = mapped_column(Numeric(18, 8, asdecimal=False), nullable=False, default=0.0)

    last_batch_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class Condensation(Base):
    """
    Immutable history of one ensouling run. Rows are inserted, never updated.
    """
    __tablename__ = "condensations"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    soul_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("souls.id", ondelete="CASCADE"),
        nullable=False,
    )
    version_from: Mapped[int] = mapped_column(Integer, nullable=False)
    version_to: Mapped[int] = mapped_column(Integer, nullable=False)
    frags_merged: Mapped[int] = mapped_column(Integer, nullable=False)
    summary_diff: Mapped[str] = mapped_column(Text, nullable=False, default="")
    new_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tx_hash: Mapped[str | None] = mapped_column(String(66))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("soul_id", "version_to", name="uq_condensation_soul_version"),
        Index("ix_condensations_soul_id", "soul_id"),
    )


class Fragment(Base):
    __tablename__ = "fragments"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    soul_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("souls.id", ondelete="CASCADE"),
        nullable=False,
    )
    claw_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("claws.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_id: Mapped[UUID] = mapped_column(String(36), nullable=False)

    dimension: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=FRAG_STATUS_PENDING)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reject_reason: Mapped[str | None] = mapped_column(Text)

    condensation_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("condensations.id", ondelete="SET NULL"),
        nullable=True,
    )

    # curation bookkeeping
    review_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_review_error: Mapped[str | None] = mapped_column(Text)
    next_review_at: Mapped[datetime | None] = mapped_column(DateTime)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_fragments_soul_status", "soul_id", "status"),
        Index("ix_fragments_claw_id", "claw_id"),
        Index("ix_fragments_batch_id", "batch_id"),
        Index(
            "ix_fragments_pending",
            "status",
            "next_review_at",
            postgresql_where=text("status = 'pending'"),
        ),
    )


class WalletSession(Base):
    __tablename__ = "wallet_sessions"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    wallet_addr: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class ClawBinding(Base):
    __tablename__ = "claw_bindings"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    wallet_addr: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    claw_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("claws.id", ondelete="CASCADE"),
        nullable=False,
    )
    claw_name: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("wallet_addr", "claw_id", name="uq_claw_binding_wallet_claw"),
    )


class WalletQuota(Base):
    __tablename__ = "wallet_quotas"

    # lower-cased 0x address
    wallet_addr: Mapped[str] = mapped_column(String(42), primary_key=True)
    souls_minted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ChatSession(Base, TimestampMixin):
    __tablename__ = "chat_sessions"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    soul_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("souls.id", ondelete="CASCADE"),
        nullable=False,
    )
    # None for guest sessions
    wallet_addr: Mapped[str | None] = mapped_column(String(42))
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default=CHAT_TIER_GUEST)
    rounds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    __table_args__ = (
        Index("ix_chat_sessions_wallet_addr", "wallet_addr"),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    session_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    # round number; a user message and its reply share one
    turn: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_chat_messages_session_id", "session_id"),
    )
