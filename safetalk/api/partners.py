"""Partner pairing routes."""

from fastapi import APIRouter, BackgroundTasks

from ..core.dependencies import CurrentUserDep, PushChannelDep, SessionDep, SessionFactoryDep
from ..schemas import ConnectPartnerRequest, ConnectPartnerResponse, UserRef
from ..services.notifications import NotificationDispatcher
from ..services.pairing import PartnerRegistry
from .followups import commit_and_schedule

router = APIRouter(prefix="/partners", tags=["partners"])


@router.post("/connect", response_model=ConnectPartnerResponse)
async def connect_partner(
    request: ConnectPartnerRequest,
    current_user: CurrentUserDep,
    session: SessionDep,
    session_factory: SessionFactoryDep,
    push_channel: PushChannelDep,
    background_tasks: BackgroundTasks,
):
    """Connect to a co-parent using their partner code."""
    registry = PartnerRegistry(session, NotificationDispatcher(session, push_channel))
    partner = await registry.connect(current_user, request.partner_code)

    await commit_and_schedule(session, background_tasks, session_factory, push_channel)
    return ConnectPartnerResponse(
        partner=UserRef(id=partner.id, name=partner.name, email=partner.email)
    )
