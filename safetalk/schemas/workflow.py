"""Pydantic schemas for pairing, issues, messages, proposals and notifications."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field, field_validator

from ..models import IssueStatus, NotificationType, PushStatus, SenderType, VoteState
from .base import SafeTalkBaseModel, UserRef


# =============================================================================
# PAIRING
# =============================================================================


class ConnectPartnerRequest(SafeTalkBaseModel):
    partner_code: str = Field(
        ...,
        min_length=1,
        max_length=20,
        alias="partnerCode",
        description="Six-character code shown on the partner's profile",
    )


class ConnectPartnerResponse(SafeTalkBaseModel):
    success: bool = True
    partner: UserRef


# =============================================================================
# ISSUES & MESSAGES
# =============================================================================


class CreateIssueRequest(SafeTalkBaseModel):
    title: str | None = Field(default=None, max_length=200)


class IssueResponse(SafeTalkBaseModel):
    id: UUID
    partner_a_id: UUID
    partner_b_id: UUID
    status: IssueStatus
    summary: str
    red_flagged: bool
    user_message_count: int
    created_at: datetime
    resolved_at: datetime | None = None


class MessageResponse(SafeTalkBaseModel):
    id: UUID
    issue_id: UUID
    sender_type: SenderType
    sender_id: UUID | None = None
    content: str
    is_flagged: bool
    created_at: datetime


class SendMessageRequest(SafeTalkBaseModel):
    content: str = Field(..., description="Raw message text; trimmed before screening")


class SendMessageResponse(SafeTalkBaseModel):
    success: bool = True
    user_message: MessageResponse
    ai_response: MessageResponse
    mediator_triggered: bool = False


class SafetyResource(SafeTalkBaseModel):
    name: str
    contact: str


class RedFlagResponse(SafeTalkBaseModel):
    """Returned instead of a message when content halts the issue."""

    error: str = "red_flag_detected"
    message: str
    is_red_flagged: bool = True
    issue_id: UUID
    resources: list[SafetyResource]


# =============================================================================
# PROPOSALS & VOTES
# =============================================================================


class ProposalResponse(SafeTalkBaseModel):
    id: UUID
    issue_id: UUID
    version: int
    content: str
    internal_score: float
    is_compromise: bool
    accepted_by_a: VoteState
    accepted_by_b: VoteState
    created_at: datetime


class IssueDetailResponse(SafeTalkBaseModel):
    issue: IssueResponse
    messages: list[MessageResponse]
    current_proposal: ProposalResponse | None = None
    max_attempts_reached: bool = False


class SubmitVoteRequest(SafeTalkBaseModel):
    accept: bool


class SubmitVoteResponse(SafeTalkBaseModel):
    success: bool = True
    proposal: ProposalResponse
    issue_status: IssueStatus
    both_voted: bool
    both_accepted: bool
    max_attempts_reached: bool = False


class MediatorCycleResponse(SafeTalkBaseModel):
    issue_id: UUID
    outcome: str
    proposal: ProposalResponse | None = None
    score: float | None = None
    attempt_number: int | None = None


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class NotificationResponse(SafeTalkBaseModel):
    id: UUID
    user_id: UUID
    type: NotificationType
    is_read: bool
    payload: dict[str, Any]
    push_status: PushStatus
    created_at: datetime


class SendNotificationRequest(SafeTalkBaseModel):
    user_id: UUID = Field(..., alias="userId")
    type: NotificationType
    payload: dict[str, Any] = Field(default_factory=dict)


class SendNotificationResponse(SafeTalkBaseModel):
    success: bool = True
    notification: NotificationResponse
    push_status: PushStatus
    push_error: str | None = None


class PushTokenRequest(SafeTalkBaseModel):
    token: str | None = Field(default=None, max_length=4096)

    @field_validator("token")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


# =============================================================================
# USER DATA
# =============================================================================


class UserProfileResponse(SafeTalkBaseModel):
    id: UUID
    name: str | None = None
    email: str
    partner_code: str
    connected_partner: UserRef | None = None


class UserDataResponse(SafeTalkBaseModel):
    user: UserProfileResponse
    current_issue: IssueResponse | None = None
    current_proposal: ProposalResponse | None = None
    recent_messages: list[MessageResponse] = []
    unread_notifications: list[NotificationResponse] = []
    resolved_issues: list[IssueResponse] = []
    max_attempts_reached: bool = False
