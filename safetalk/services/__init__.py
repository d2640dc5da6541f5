"""Business logic services for SafeTalk."""

from .agents import (
    AgentBackend,
    NormalizedMessage,
    OpenAIAgentBackend,
    ProposalDraft,
    ProposalRequest,
    SafetyVerdict,
    ScriptedAgentBackend,
    get_agent_backend,
)
from .dashboard import DashboardService, UserDashboard
from .errors import WorkflowError
from .issue_engine import (
    CycleOutcome,
    IssueDetail,
    IssueEngine,
    MediatorCycleResult,
    SendMessageResult,
    VoteResult,
)
from .message_normalizer import MessageNormalizer
from .notifications import (
    FCMPushChannel,
    NotificationDispatcher,
    PushChannel,
    PushResult,
)
from .pairing import PartnerInfo, PartnerRegistry
from .proposal_generator import ProposalGenerator
from .safety_classifier import SafetyClassifier
from .users import UserService

__all__ = [
    # Agents
    "AgentBackend",
    "OpenAIAgentBackend",
    "ScriptedAgentBackend",
    "get_agent_backend",
    "SafetyVerdict",
    "NormalizedMessage",
    "ProposalRequest",
    "ProposalDraft",
    "SafetyClassifier",
    "MessageNormalizer",
    "ProposalGenerator",
    # Issue engine (primary)
    "IssueEngine",
    "CycleOutcome",
    "IssueDetail",
    "MediatorCycleResult",
    "SendMessageResult",
    "VoteResult",
    "WorkflowError",
    # Supporting services
    "DashboardService",
    "UserDashboard",
    "NotificationDispatcher",
    "PushChannel",
    "PushResult",
    "FCMPushChannel",
    "PartnerRegistry",
    "PartnerInfo",
    "UserService",
]
