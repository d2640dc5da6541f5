"""
Issue routes: the conflict-resolution workflow.

1. POST /issues - Open an issue with the connected partner
2. GET /issues/{id} - Participant view with messages and current proposal
3. POST /issues/{id}/messages - Send a message (may halt the issue)
4. POST /proposals/{id}/vote - Vote on the current proposal
"""

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, status
from fastapi.responses import JSONResponse

from ..core.dependencies import (
    AgentBackendDep,
    CurrentUserDep,
    IssueEngineDep,
    PushChannelDep,
    SessionDep,
    SessionFactoryDep,
)
from ..schemas import (
    CreateIssueRequest,
    IssueDetailResponse,
    IssueResponse,
    MessageResponse,
    ProposalResponse,
    RedFlagResponse,
    SafetyResource,
    SendMessageRequest,
    SendMessageResponse,
    SubmitVoteRequest,
    SubmitVoteResponse,
)
from ..services.safety_classifier import RED_FLAG_MESSAGE, SAFETY_RESOURCES
from .followups import commit_and_schedule

router = APIRouter(tags=["issues"])


@router.post(
    "/issues",
    response_model=IssueResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_issue(
    request: CreateIssueRequest,
    current_user: CurrentUserDep,
    engine: IssueEngineDep,
    session: SessionDep,
    session_factory: SessionFactoryDep,
    push_channel: PushChannelDep,
    background_tasks: BackgroundTasks,
):
    """Start a new issue. Only one active issue may exist per partner pair."""
    issue = await engine.create_issue(current_user, request.title)
    await commit_and_schedule(session, background_tasks, session_factory, push_channel)
    return IssueResponse.model_validate(issue)


@router.get("/issues/{issue_id}", response_model=IssueDetailResponse)
async def get_issue(
    issue_id: UUID,
    current_user: CurrentUserDep,
    engine: IssueEngineDep,
):
    detail = await engine.get_issue(issue_id, current_user)
    return IssueDetailResponse(
        issue=IssueResponse.model_validate(detail.issue),
        messages=[MessageResponse.model_validate(m) for m in detail.messages],
        current_proposal=(
            ProposalResponse.model_validate(detail.current_proposal)
            if detail.current_proposal
            else None
        ),
        max_attempts_reached=detail.max_attempts_reached,
    )


@router.post(
    "/issues/{issue_id}/messages",
    response_model=SendMessageResponse,
    responses={400: {"model": RedFlagResponse}},
)
async def send_message(
    issue_id: UUID,
    request: SendMessageRequest,
    current_user: CurrentUserDep,
    engine: IssueEngineDep,
    session: SessionDep,
    session_factory: SessionFactoryDep,
    backend: AgentBackendDep,
    push_channel: PushChannelDep,
    background_tasks: BackgroundTasks,
):
    """
    Send a message on an issue.

    Harmful content halts the issue and returns 400 with safety resources.
    The halt itself is committed.
    """
    result = await engine.send_message(issue_id, current_user, request.content)

    if result.red_flagged:
        await session.commit()
        body = RedFlagResponse(
            message=RED_FLAG_MESSAGE,
            issue_id=result.issue.id,
            resources=[SafetyResource(**r) for r in SAFETY_RESOURCES],
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=body.model_dump(mode="json"),
        )

    await commit_and_schedule(
        session,
        background_tasks,
        session_factory,
        push_channel,
        backend=backend,
        mediator_issue_id=result.issue.id if result.mediator_triggered else None,
    )
    return SendMessageResponse(
        user_message=MessageResponse.model_validate(result.message),
        ai_response=MessageResponse.model_validate(result.ai_message),
        mediator_triggered=result.mediator_triggered,
    )


@router.post("/proposals/{proposal_id}/vote", response_model=SubmitVoteResponse)
async def submit_vote(
    proposal_id: UUID,
    request: SubmitVoteRequest,
    current_user: CurrentUserDep,
    engine: IssueEngineDep,
    session: SessionDep,
    session_factory: SessionFactoryDep,
    backend: AgentBackendDep,
    push_channel: PushChannelDep,
    background_tasks: BackgroundTasks,
):
    """Accept or reject the current proposal. Each partner votes once per version."""
    result = await engine.submit_vote(proposal_id, current_user, request.accept)

    await commit_and_schedule(
        session,
        background_tasks,
        session_factory,
        push_channel,
        backend=backend,
        mediator_issue_id=result.issue.id if result.mediator_task else None,
    )
    return SubmitVoteResponse(
        proposal=ProposalResponse.model_validate(result.proposal),
        issue_status=result.issue.status,
        both_voted=result.both_voted,
        both_accepted=result.both_accepted,
        max_attempts_reached=result.max_attempts_reached,
    )
