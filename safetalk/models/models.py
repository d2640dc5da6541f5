"""SQLAlchemy ORM Models for SafeTalk.

Six logical tables back the workflow (users, issues, messages,
mediator_logs, notifications, ai_events) plus the mediator_tasks queue
that carries mediator cycles from the request path to the worker.
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, CreatedAtMixin, JSONType, UUIDMixin


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# ENUMS
# =============================================================================


class IssueStatus(str, PyEnum):
    IN_PROGRESS = "in_progress"
    PROPOSAL_SENT = "proposal_sent"
    RESOLVED = "resolved"
    HALTED = "halted"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_ISSUE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in (IssueStatus.RESOLVED, IssueStatus.HALTED)


ACTIVE_ISSUE_STATUSES = (IssueStatus.IN_PROGRESS, IssueStatus.PROPOSAL_SENT)


class SenderType(str, PyEnum):
    USER = "user"
    AI = "ai"


class VoteState(str, PyEnum):
    """A partner's vote on one proposal version."""
    NOT_VOTED = "not_voted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @classmethod
    def from_accept(cls, accept: bool) -> "VoteState":
        return cls.ACCEPTED if accept else cls.REJECTED


class NotificationType(str, PyEnum):
    NEW_ISSUE = "new_issue"
    PROPOSAL_READY = "proposal_ready"
    ISSUE_RESOLVED = "issue_resolved"


class PushStatus(str, PyEnum):
    """Status of best-effort push delivery."""
    PENDING = "pending"
    SENDING = "sending"  # Claimed by a delivery pass
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # No device token or push not configured


class AgentType(str, PyEnum):
    SAFETY_CLASSIFIER = "safety_classifier"
    PARTNER_AI = "partner_ai"
    MEDIATOR_AI = "mediator_ai"


class MediatorTrigger(str, PyEnum):
    MESSAGE_MILESTONE = "message_milestone"
    PROPOSAL_REJECTED = "proposal_rejected"


class TaskStatus(str, PyEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# USERS
# =============================================================================


class User(Base, UUIDMixin, CreatedAtMixin):
    """Application user. Pairing is symmetric: both rows point at each other or neither does."""

    __tablename__ = "users"

    auth_subject: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    partner_code: Mapped[str] = mapped_column(String(6), unique=True, nullable=False)
    connected_user_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("users.id"), unique=True, nullable=True
    )
    fcm_token: Mapped[str | None] = mapped_column(Text)

    connected_partner: Mapped["User | None"] = relationship(
        remote_side="User.id", foreign_keys=[connected_user_id]
    )

    __table_args__ = (
        CheckConstraint(
            "connected_user_id IS NULL OR connected_user_id <> id",
            name="no_self_pairing",
        ),
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email


# =============================================================================
# ISSUES
# =============================================================================


def make_pair_key(user_a: UUID, user_b: UUID) -> str:
    """Order-independent key for a partner pair."""
    return ":".join(sorted((str(user_a), str(user_b))))


class Issue(Base, UUIDMixin, CreatedAtMixin):
    """One conflict-resolution thread between two paired partners."""

    __tablename__ = "issues"

    partner_a_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    partner_b_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    pair_key: Mapped[str] = mapped_column(String(80), nullable=False)
    status: Mapped[IssueStatus] = mapped_column(
        _enum(IssueStatus, "issue_status"),
        default=IssueStatus.IN_PROGRESS,
        nullable=False,
    )
    summary: Mapped[str] = mapped_column(Text, default="New Issue", nullable=False)
    red_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    user_message_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column()

    partner_a: Mapped["User"] = relationship(foreign_keys=[partner_a_id])
    partner_b: Mapped["User"] = relationship(foreign_keys=[partner_b_id])
    messages: Mapped[list["Message"]] = relationship(
        back_populates="issue", order_by="Message.created_at"
    )
    proposals: Mapped[list["Proposal"]] = relationship(
        back_populates="issue", order_by="Proposal.version"
    )

    __table_args__ = (
        # At most one active issue per unordered pair
        Index(
            "uq_issues_active_pair",
            "pair_key",
            unique=True,
            postgresql_where=text("status IN ('in_progress', 'proposal_sent')"),
            sqlite_where=text("status IN ('in_progress', 'proposal_sent')"),
        ),
        Index("idx_issues_partner_a", "partner_a_id"),
        Index("idx_issues_partner_b", "partner_b_id"),
        CheckConstraint("partner_a_id <> partner_b_id", name="distinct_partners"),
    )

    def is_participant(self, user_id: UUID) -> bool:
        return user_id in (self.partner_a_id, self.partner_b_id)

    def other_partner_id(self, user_id: UUID) -> UUID:
        return self.partner_b_id if user_id == self.partner_a_id else self.partner_a_id


# =============================================================================
# MESSAGES
# =============================================================================


class Message(Base, UUIDMixin, CreatedAtMixin):
    """Immutable chat message. ``sender_id`` is null for AI messages."""

    __tablename__ = "messages"

    issue_id: Mapped[UUID] = mapped_column(ForeignKey("issues.id"), nullable=False)
    sender_type: Mapped[SenderType] = mapped_column(
        _enum(SenderType, "sender_type"), nullable=False
    )
    sender_id: Mapped[UUID | None] = mapped_column(ForeignKey("users.id"))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    mediator_summary: Mapped[str | None] = mapped_column(Text)
    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    issue: Mapped["Issue"] = relationship(back_populates="messages")
    sender: Mapped["User | None"] = relationship()

    __table_args__ = (
        Index("idx_messages_issue_time", "issue_id", "created_at"),
        CheckConstraint(
            "(sender_type = 'ai' AND sender_id IS NULL) OR "
            "(sender_type = 'user' AND sender_id IS NOT NULL)",
            name="sender_matches_type",
        ),
    )


# =============================================================================
# PROPOSALS (mediator log)
# =============================================================================


class Proposal(Base, UUIDMixin, CreatedAtMixin):
    """A versioned mediator proposal. Only the highest version is actionable."""

    __tablename__ = "mediator_logs"

    issue_id: Mapped[UUID] = mapped_column(ForeignKey("issues.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    internal_score: Mapped[float] = mapped_column(Float, nullable=False)
    is_compromise: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    accepted_by_a: Mapped[VoteState] = mapped_column(
        _enum(VoteState, "vote_state"), default=VoteState.NOT_VOTED, nullable=False
    )
    accepted_by_b: Mapped[VoteState] = mapped_column(
        _enum(VoteState, "vote_state"), default=VoteState.NOT_VOTED, nullable=False
    )

    issue: Mapped["Issue"] = relationship(back_populates="proposals")

    __table_args__ = (
        UniqueConstraint("issue_id", "version"),
        CheckConstraint("version >= 1 AND version <= 5", name="version_range"),
        CheckConstraint(
            "internal_score >= 0.0 AND internal_score <= 1.0", name="score_range"
        ),
    )

    @property
    def both_voted(self) -> bool:
        return (
            self.accepted_by_a != VoteState.NOT_VOTED
            and self.accepted_by_b != VoteState.NOT_VOTED
        )

    @property
    def both_accepted(self) -> bool:
        return (
            self.accepted_by_a == VoteState.ACCEPTED
            and self.accepted_by_b == VoteState.ACCEPTED
        )


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class Notification(Base, UUIDMixin, CreatedAtMixin):
    """A notification addressed to one user. ``is_read`` is owned by the addressee."""

    __tablename__ = "notifications"

    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        _enum(NotificationType, "notification_type"), nullable=False
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    push_status: Mapped[PushStatus] = mapped_column(
        _enum(PushStatus, "push_status"), default=PushStatus.PENDING, nullable=False
    )
    push_error: Mapped[str | None] = mapped_column(Text)
    push_claimed_at: Mapped[datetime | None] = mapped_column()
    sent_at: Mapped[datetime | None] = mapped_column()

    user: Mapped["User"] = relationship()

    __table_args__ = (
        Index("idx_notifications_user_unread", "user_id", "is_read", "created_at"),
        Index("idx_notifications_push_status", "push_status"),
    )


# =============================================================================
# AUDIT
# =============================================================================


class AIEvent(Base, UUIDMixin, CreatedAtMixin):
    """Append-only trace of agent invocations. Not used for control flow."""

    __tablename__ = "ai_events"

    issue_id: Mapped[UUID | None] = mapped_column(ForeignKey("issues.id"))
    agent: Mapped[AgentType] = mapped_column(_enum(AgentType, "agent_type"), nullable=False)
    input: Mapped[str] = mapped_column(Text, nullable=False)
    output: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("idx_ai_events_issue", "issue_id", "created_at"),
    )


# =============================================================================
# MEDIATOR QUEUE
# =============================================================================


class MediatorTask(Base, UUIDMixin, CreatedAtMixin):
    """A queued mediator cycle, emitted by the transition that triggers it."""

    __tablename__ = "mediator_tasks"

    issue_id: Mapped[UUID] = mapped_column(ForeignKey("issues.id"), nullable=False)
    trigger: Mapped[MediatorTrigger] = mapped_column(
        _enum(MediatorTrigger, "mediator_trigger"), nullable=False
    )
    trigger_key: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[TaskStatus] = mapped_column(
        _enum(TaskStatus, "task_status"), default=TaskStatus.PENDING, nullable=False
    )
    outcome: Mapped[str | None] = mapped_column(String(50))
    error_message: Mapped[str | None] = mapped_column(Text)
    claimed_at: Mapped[datetime | None] = mapped_column()
    processed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        # One cycle per triggering event
        UniqueConstraint("issue_id", "trigger_key"),
        Index("idx_mediator_tasks_status", "status", "created_at"),
    )
