"""Notification routes for the signed-in user."""

from uuid import UUID

from fastapi import APIRouter, Query

from ..core.config import get_settings
from ..core.dependencies import CurrentUserDep, PushChannelDep, SessionDep
from ..schemas import NotificationResponse
from ..services.notifications import NotificationDispatcher

router = APIRouter(prefix="/notifications", tags=["notifications"])
settings = get_settings()


@router.get("", response_model=list[NotificationResponse])
async def list_unread_notifications(
    current_user: CurrentUserDep,
    session: SessionDep,
    push_channel: PushChannelDep,
    limit: int = Query(default=settings.unread_notifications_limit, ge=1, le=100),
):
    dispatcher = NotificationDispatcher(session, push_channel)
    notifications = await dispatcher.list_unread(current_user.id, limit)
    return [NotificationResponse.model_validate(n) for n in notifications]


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: UUID,
    current_user: CurrentUserDep,
    session: SessionDep,
    push_channel: PushChannelDep,
):
    """Mark a notification as read. Only the addressee may do this."""
    dispatcher = NotificationDispatcher(session, push_channel)
    notification = await dispatcher.mark_read(notification_id, current_user.id)
    return NotificationResponse.model_validate(notification)
