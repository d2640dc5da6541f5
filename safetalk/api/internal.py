"""
Internal service-level routes.

Guarded by the ``X-Service-Key`` header rather than a user token.
"""

from uuid import UUID

from fastapi import APIRouter, status

from ..core.dependencies import IssueEngineDep, PushChannelDep, ServiceKeyDep, SessionDep
from ..models import NotificationType
from ..schemas import (
    MediatorCycleResponse,
    NotificationResponse,
    ProposalResponse,
    SendNotificationRequest,
    SendNotificationResponse,
)
from ..services.errors import MaxAttemptsReachedError
from ..services.issue_engine import CycleOutcome
from ..services.notifications import NotificationDispatcher
from ..services.users import UserService

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[ServiceKeyDep])


@router.post(
    "/notifications",
    response_model=SendNotificationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_notification(
    request: SendNotificationRequest,
    session: SessionDep,
    push_channel: PushChannelDep,
):
    """Store a notification and attempt push delivery immediately."""
    user = await UserService(session).get(request.user_id)

    dispatcher = NotificationDispatcher(session, push_channel)
    notification = await dispatcher.notify(
        user.id, NotificationType(request.type), request.payload
    )
    push = await dispatcher.deliver(notification)
    await session.flush()

    return SendNotificationResponse(
        notification=NotificationResponse.model_validate(notification),
        push_status=push.status,
        push_error=push.error,
    )


@router.post("/issues/{issue_id}/mediator-cycle", response_model=MediatorCycleResponse)
async def run_mediator_cycle(issue_id: UUID, engine: IssueEngineDep):
    """Run one mediator cycle for an issue now, outside the queue."""
    result = await engine.run_mediator_cycle(issue_id)
    if result.outcome == CycleOutcome.MAX_ATTEMPTS_REACHED:
        raise MaxAttemptsReachedError()
    return MediatorCycleResponse(
        issue_id=result.issue_id,
        outcome=result.outcome.value,
        proposal=ProposalResponse.model_validate(result.proposal) if result.proposal else None,
        score=result.score,
        attempt_number=result.attempt_number,
    )
