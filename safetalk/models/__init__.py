"""SQLAlchemy ORM Models for SafeTalk."""

from .base import Base, CreatedAtMixin, UUIDMixin, utcnow
from .models import (
    # Enums
    ACTIVE_ISSUE_STATUSES,
    AgentType,
    IssueStatus,
    MediatorTrigger,
    NotificationType,
    PushStatus,
    SenderType,
    TaskStatus,
    VoteState,
    # Users & issues
    Issue,
    Message,
    Proposal,
    User,
    make_pair_key,
    # Notifications
    Notification,
    # Audit & queue
    AIEvent,
    MediatorTask,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "CreatedAtMixin",
    "utcnow",
    # Enums
    "ACTIVE_ISSUE_STATUSES",
    "AgentType",
    "IssueStatus",
    "MediatorTrigger",
    "NotificationType",
    "PushStatus",
    "SenderType",
    "TaskStatus",
    "VoteState",
    # Users & issues
    "User",
    "Issue",
    "Message",
    "Proposal",
    "make_pair_key",
    # Notifications
    "Notification",
    # Audit & queue
    "AIEvent",
    "MediatorTask",
]
