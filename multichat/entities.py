# multichat/entities.py
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
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


def utcnow() -> datetime:
    """Naive UTC, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


# Membership roles, highest first. Index doubles as the listing rank.
ROLE_OWNER = "OWNER"
ROLE_MODERATOR = "MODERATOR"
ROLE_MEMBER = "MEMBER"
ROLE_VIEWER = "VIEWER"
ROLES = (ROLE_OWNER, ROLE_MODERATOR, ROLE_MEMBER, ROLE_VIEWER)

MEMBERSHIP_INVITED = "INVITED"
MEMBERSHIP_ACTIVE = "ACTIVE"
MEMBERSHIP_LEFT = "LEFT"
MEMBERSHIP_KICKED = "KICKED"

SENDER_USER = "user"
SENDER_CHARACTER = "character"

JOB_PENDING = "PENDING"
JOB_RUNNING = "RUNNING"
JOB_SUCCEEDED = "SUCCEEDED"
JOB_FAILED = "FAILED"

JOB_KIND_RESPONSE = "response"
JOB_KIND_COMPRESSION = "compression"


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class User(Base, TimestampMixin):
    __tablename__ = "user"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(120))

    # Balance in ledger units (see Settings.currency)
    credit_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 4),
        nullable=False,
        default=Decimal("0"),
        server_default=text("0"),
    )


class Character(Base, TimestampMixin):
    __tablename__ = "character"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    persona: Mapped[str | None] = mapped_column(Text)
    # None -> Settings.chat_model
    model_name: Mapped[str | None] = mapped_column(String(120))


class Conversation(Base, TimestampMixin):
    __tablename__ = "conversation"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_user_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("user.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str | None] = mapped_column(String(255))

    is_multi_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_users: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    is_nsfw: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # freeform policy: allow_open_join, ...
    permission_policy: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)

    # compare-and-swap counters (see MessageLog / EventOutbox)
    last_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_event_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ConversationCharacter(Base):
    __tablename__ = "conversation_character"

    conversation_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("conversation.id", ondelete="CASCADE"),
        primary_key=True,
    )
    character_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("character.id", ondelete="CASCADE"),
        primary_key=True,
    )
    # attachment order, used as the responder fallback order
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    added_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class Membership(Base):
    __tablename__ = "membership"

    conversation_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("conversation.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("user.id", ondelete="CASCADE"),
        primary_key=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=ROLE_MEMBER)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=MEMBERSHIP_ACTIVE)

    can_write: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_invite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    invited_by: Mapped[UUID | None] = mapped_column(String(36))
    invited_at: Mapped[datetime | None] = mapped_column(DateTime)
    joined_at: Mapped[datetime | None] = mapped_column(DateTime)
    left_at: Mapped[datetime | None] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "role in ('OWNER', 'MODERATOR', 'MEMBER', 'VIEWER')",
            name="ck_membership_role",
        ),
        CheckConstraint(
            "role <> 'VIEWER' OR can_write = false",
            name="ck_membership_viewer_read_only",
        ),
        Index("ix_membership_conversation_status", "conversation_id", "status"),
        # exactly one active OWNER per conversation
        Index(
            "uq_membership_single_owner",
            "conversation_id",
            unique=True,
            postgresql_where=text("role = 'OWNER' AND status = 'ACTIVE'"),
            sqlite_where=text("role = 'OWNER' AND status = 'ACTIVE'"),
        ),
    )


class Message(Base):
    __tablename__ = "message"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=new_id)
    conversation_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("conversation.id", ondelete="CASCADE"),
        nullable=False,
    )
    # sole ordering authority inside a conversation
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    sender_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    # generation metadata (character messages only)
    requesting_user_id: Mapped[UUID | None] = mapped_column(String(36))
    job_id: Mapped[str | None] = mapped_column(String(36))
    credit_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    regenerated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)
    deleted_by: Mapped[UUID | None] = mapped_column(String(36))

    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_message_conversation_sequence"),
    )


class ConversationMemory(Base):
    __tablename__ = "conversation_memory"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=new_id)
    conversation_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("conversation.id", ondelete="CASCADE"),
        nullable=False,
    )

    summary: Mapped[str] = mapped_column(Text, nullable=False)
    key_events: Mapped[list[object]] = mapped_column(JSON, nullable=False, default=list)
    character_states: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    narrative_flags: Mapped[list[object]] = mapped_column(JSON, nullable=False, default=list)

    start_message_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    end_message_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    start_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    end_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        # two racing compressions of the same range cannot both land
        UniqueConstraint("conversation_id", "start_sequence", name="uq_memory_conversation_start"),
        Index("ix_memory_conversation_end", "conversation_id", "end_sequence"),
    )


class QueueJob(Base):
    """
    Durable work item. Jobs of one conversation run strictly one at a time,
    in id order; see JobQueue.claim_next.
    """
    __tablename__ = "queue_job"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, default=new_id)

    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    conversation_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    # the human billed for this job, captured at enqueue time
    requesting_user_id: Mapped[UUID | None] = mapped_column(String(36))

    payload: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)

    state: Mapped[str] = mapped_column(String(20), nullable=False, default=JOB_PENDING)
    status: Mapped[str | None] = mapped_column(String(255))
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    available_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime)

    runner_id: Mapped[str | None] = mapped_column(String(120))

    __table_args__ = (
        Index("ix_queue_job_conversation_state", "conversation_id", "state"),
        Index("ix_queue_job_state_available", "state", "available_at"),
    )


class QueueMessage(Base):
    """
    Event outbox row. Written in the same transaction as the mutation it
    describes and fanned out by OutboxRelay.
    """
    __tablename__ = "queue_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_id: Mapped[str] = mapped_column(String(120), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(120), nullable=False)  # "conversation::<id>"
    conversation_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    event_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class PendingCharge(Base, TimestampMixin):
    __tablename__ = "pending_charge"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    idempotency_key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )

    # Who to charge: always the job's requesting user
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Optional context
    conversation_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("conversation.id", ondelete="SET NULL"),
        nullable=True,
    )
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255))

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",  # PENDING, CHARGED, FAILED
    )

    ledger_entry_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    charged_at: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_pending_charge_status", "status"),
    )


class CreditTransaction(Base):
    __tablename__ = "credit_transaction"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("user.id", ondelete="CASCADE"),
        nullable=False,
    )
    # negative for charges, positive for grants
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_credit_transaction_user", "user_id"),
    )
