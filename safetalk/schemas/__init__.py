"""SafeTalk API Schemas.

- base: common configuration, error envelope, references
- workflow: pairing, issues, messages, proposals, notifications, user data
"""

from .base import (
    ErrorDetail,
    ErrorResponse,
    SafeTalkBaseModel,
    UserRef,
)
from .workflow import (
    # Pairing
    ConnectPartnerRequest,
    ConnectPartnerResponse,
    # Issues & messages
    CreateIssueRequest,
    IssueDetailResponse,
    IssueResponse,
    MessageResponse,
    RedFlagResponse,
    SafetyResource,
    SendMessageRequest,
    SendMessageResponse,
    # Proposals
    MediatorCycleResponse,
    ProposalResponse,
    SubmitVoteRequest,
    SubmitVoteResponse,
    # Notifications
    NotificationResponse,
    PushTokenRequest,
    SendNotificationRequest,
    SendNotificationResponse,
    # User data
    UserDataResponse,
    UserProfileResponse,
)

__all__ = [
    "SafeTalkBaseModel",
    "ErrorDetail",
    "ErrorResponse",
    "UserRef",
    "ConnectPartnerRequest",
    "ConnectPartnerResponse",
    "CreateIssueRequest",
    "IssueDetailResponse",
    "IssueResponse",
    "MessageResponse",
    "RedFlagResponse",
    "SafetyResource",
    "SendMessageRequest",
    "SendMessageResponse",
    "MediatorCycleResponse",
    "ProposalResponse",
    "SubmitVoteRequest",
    "SubmitVoteResponse",
    "NotificationResponse",
    "PushTokenRequest",
    "SendNotificationRequest",
    "SendNotificationResponse",
    "UserDataResponse",
    "UserProfileResponse",
]
