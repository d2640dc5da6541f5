"""User dashboard aggregation (GetUserData)."""

from dataclasses import dataclass, field

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..models import (
    ACTIVE_ISSUE_STATUSES,
    Issue,
    IssueStatus,
    Message,
    Notification,
    Proposal,
    User,
    make_pair_key,
)
from .issue_engine import max_attempts_reached


@dataclass
class UserDashboard:
    user: User
    partner: User | None = None
    current_issue: Issue | None = None
    current_proposal: Proposal | None = None
    recent_messages: list[Message] = field(default_factory=list)
    unread_notifications: list[Notification] = field(default_factory=list)
    resolved_issues: list[Issue] = field(default_factory=list)
    max_attempts_reached: bool = False


class DashboardService:
    """Read-only snapshot of everything the home screen needs."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def get_user_data(self, user: User) -> UserDashboard:
        dashboard = UserDashboard(user=user)

        if user.connected_user_id:
            dashboard.partner = await self.session.get(User, user.connected_user_id)
            dashboard.current_issue = await self._active_issue(user)

        issue = dashboard.current_issue
        if issue:
            dashboard.recent_messages = await self._recent_messages(issue)
            latest = await self._latest_proposal(issue)
            if issue.status == IssueStatus.PROPOSAL_SENT:
                dashboard.current_proposal = latest
            dashboard.max_attempts_reached = max_attempts_reached(
                issue, latest, self.settings.max_proposal_attempts
            )

        dashboard.unread_notifications = await self._unread_notifications(user)
        dashboard.resolved_issues = await self._resolved_issues(user)
        return dashboard

    async def _active_issue(self, user: User) -> Issue | None:
        result = await self.session.execute(
            select(Issue).where(
                Issue.pair_key == make_pair_key(user.id, user.connected_user_id),
                Issue.status.in_(ACTIVE_ISSUE_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    async def _recent_messages(self, issue: Issue) -> list[Message]:
        """Latest messages, returned oldest first."""
        result = await self.session.execute(
            select(Message)
            .where(Message.issue_id == issue.id)
            .order_by(Message.created_at.desc())
            .limit(self.settings.recent_messages_limit)
        )
        return list(reversed(result.scalars().all()))

    async def _latest_proposal(self, issue: Issue) -> Proposal | None:
        result = await self.session.execute(
            select(Proposal)
            .where(Proposal.issue_id == issue.id)
            .order_by(Proposal.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _unread_notifications(self, user: User) -> list[Notification]:
        result = await self.session.execute(
            select(Notification)
            .where(Notification.user_id == user.id, Notification.is_read.is_(False))
            .order_by(Notification.created_at.desc())
            .limit(self.settings.unread_notifications_limit)
        )
        return list(result.scalars().all())

    async def _resolved_issues(self, user: User) -> list[Issue]:
        result = await self.session.execute(
            select(Issue)
            .where(
                or_(Issue.partner_a_id == user.id, Issue.partner_b_id == user.id),
                Issue.status == IssueStatus.RESOLVED,
            )
            .order_by(Issue.resolved_at.desc())
            .limit(self.settings.resolved_history_limit)
        )
        return list(result.scalars().all())
