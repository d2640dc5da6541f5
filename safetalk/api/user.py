"""User routes: /me endpoints."""

from fastapi import APIRouter

from ..core.dependencies import CurrentUserDep, SessionDep
from ..schemas import (
    IssueResponse,
    MessageResponse,
    NotificationResponse,
    ProposalResponse,
    PushTokenRequest,
    UserDataResponse,
    UserProfileResponse,
    UserRef,
)
from ..services.dashboard import DashboardService
from ..services.users import UserService

router = APIRouter(prefix="/me", tags=["user"])


@router.get("", response_model=UserDataResponse)
async def get_user_data(current_user: CurrentUserDep, session: SessionDep):
    """Profile, current issue and proposal, recent messages, unread notifications and history."""
    data = await DashboardService(session).get_user_data(current_user)

    return UserDataResponse(
        user=UserProfileResponse(
            id=data.user.id,
            name=data.user.name,
            email=data.user.email,
            partner_code=data.user.partner_code,
            connected_partner=UserRef.model_validate(data.partner) if data.partner else None,
        ),
        current_issue=IssueResponse.model_validate(data.current_issue) if data.current_issue else None,
        current_proposal=(
            ProposalResponse.model_validate(data.current_proposal)
            if data.current_proposal
            else None
        ),
        recent_messages=[MessageResponse.model_validate(m) for m in data.recent_messages],
        unread_notifications=[
            NotificationResponse.model_validate(n) for n in data.unread_notifications
        ],
        resolved_issues=[IssueResponse.model_validate(i) for i in data.resolved_issues],
        max_attempts_reached=data.max_attempts_reached,
    )


@router.put("/push-token", response_model=UserProfileResponse)
async def register_push_token(
    request: PushTokenRequest,
    current_user: CurrentUserDep,
    session: SessionDep,
):
    """Store or clear the caller's device token."""
    user = await UserService(session).set_push_token(current_user, request.token)
    return UserProfileResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        partner_code=user.partner_code,
    )
