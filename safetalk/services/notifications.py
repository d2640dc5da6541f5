"""
Notification Dispatcher: persistence and best-effort push delivery.

This module is responsible for:
1. Persisting a Notification row for every tracked transition
2. Delivering pushes through a registered channel (FCM)
3. Recording delivery status without ever failing the caller

The workflow only depends on step 1. Delivery runs after the triggering
transaction commits (background task or worker) and swallows its own errors.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..models import Notification, NotificationType, PushStatus, User, utcnow
from .errors import NotificationNotFoundError, NotificationOwnershipError

logger = logging.getLogger(__name__)

DEFAULT_PUSH_LEASE_SECONDS = 120.0


NOTIFICATION_TITLES = {
    NotificationType.NEW_ISSUE: "New Issue Started",
    NotificationType.PROPOSAL_READY: "Solution Proposal Ready",
    NotificationType.ISSUE_RESOLVED: "Issue Resolved!",
}

NOTIFICATION_DEFAULT_BODIES = {
    NotificationType.NEW_ISSUE: "Your co-parent has started a new issue discussion.",
    NotificationType.PROPOSAL_READY: "A new solution proposal is ready for your review.",
    NotificationType.ISSUE_RESOLVED: "An issue has been successfully resolved.",
}


def render_push(notification_type: NotificationType, payload: dict[str, Any]) -> tuple[str, str]:
    """Title and body shown on the device."""
    title = NOTIFICATION_TITLES.get(notification_type, "SafeTalk Notification")
    body = payload.get("message") or NOTIFICATION_DEFAULT_BODIES.get(
        notification_type, "You have a new notification."
    )
    return title, body


# =============================================================================
# PUSH CHANNELS
# =============================================================================


@dataclass
class PushResult:
    status: PushStatus
    error: str | None = None


class PushChannel(ABC):
    """Abstract base for push delivery channels."""

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def send(
        self,
        device_token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> tuple[bool, str | None]:
        """
        Send one push.

        Returns:
            (success, error_message)
        """


class FCMPushChannel(PushChannel):
    """Firebase Cloud Messaging (legacy HTTP API)."""

    def __init__(
        self,
        server_key: str | None = None,
        api_url: str | None = None,
        timeout_seconds: float = 10.0,
    ):
        settings = get_settings()
        self.server_key = server_key if server_key is not None else settings.fcm_server_key
        self.api_url = api_url or settings.fcm_api_url
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.server_key)

    async def send(
        self,
        device_token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> tuple[bool, str | None]:
        message = {
            "to": device_token,
            "notification": {"title": title, "body": body},
            "data": data,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.api_url,
                    json=message,
                    headers={
                        "Authorization": f"key={self.server_key}",
                        "Content-Type": "application/json",
                    },
                )
            if response.status_code != 200:
                return False, f"FCM error: {response.status_code}"
            result = response.json()
            if result.get("success") != 1:
                return False, f"FCM rejected message: {result.get('results')}"
            return True, None
        except (httpx.HTTPError, ValueError) as e:
            return False, f"FCM send failed: {e}"


# =============================================================================
# DISPATCHER
# =============================================================================


class NotificationDispatcher:
    """
    Persists notifications and delivers pushes.

    ``notify`` is transactional with the caller. ``deliver`` is best effort
    and never raises. Batch delivery claims rows first (``claim_pending``).
    """

    def __init__(
        self,
        session: AsyncSession,
        push_channel: PushChannel | None = None,
    ):
        self._session = session
        self._push_channel = push_channel or FCMPushChannel()

    async def notify(
        self,
        user_id: UUID,
        notification_type: NotificationType,
        payload: dict[str, Any],
    ) -> Notification:
        """Persist a notification for one user."""
        notification_type = NotificationType(notification_type)
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            payload=_json_safe(payload),
            is_read=False,
            push_status=PushStatus.PENDING,
        )
        self._session.add(notification)
        await self._session.flush()
        logger.info(f"Notification {notification_type.value} queued for user {user_id}")
        return notification

    async def notify_many(
        self,
        user_ids: list[UUID],
        notification_type: NotificationType,
        payload: dict[str, Any],
    ) -> list[Notification]:
        return [
            await self.notify(user_id, notification_type, payload)
            for user_id in user_ids
        ]

    async def deliver(self, notification: Notification) -> PushResult:
        """Attempt push delivery of one notification and record the outcome."""
        try:
            result = await self._attempt_push(notification)
        except Exception as e:
            # Delivery must never fail the caller
            logger.exception(f"Unexpected push failure for notification {notification.id}")
            result = PushResult(PushStatus.FAILED, str(e))

        notification.push_status = result.status
        notification.push_error = result.error
        if result.status == PushStatus.SENT:
            notification.sent_at = utcnow()
        elif result.status == PushStatus.FAILED:
            logger.warning(f"Push for notification {notification.id} failed: {result.error}")
        return result

    async def claim_pending(
        self,
        batch_size: int = 100,
        lease_seconds: float = DEFAULT_PUSH_LEASE_SECONDS,
    ) -> list[UUID]:
        """
        Claim pushes for one delivery pass: pending -> sending.

        A row left in ``sending`` longer than ``lease_seconds`` belongs to a
        pass that died and can be claimed again. Each claim is a conditional
        update, so overlapping passes never claim the same notification.
        """
        claimable = _claimable_pushes(lease_seconds)
        result = await self._session.execute(
            select(Notification.id)
            .where(claimable)
            .order_by(Notification.created_at.asc())
            .limit(batch_size)
        )
        claimed = []
        for notification_id in result.scalars().all():
            update_result = await self._session.execute(
                update(Notification)
                .where(Notification.id == notification_id, claimable)
                .values(push_status=PushStatus.SENDING, push_claimed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount == 1:
                claimed.append(notification_id)
        await self._session.flush()
        return claimed

    async def deliver_claimed(self, notification_ids: list[UUID]) -> tuple[int, int, int]:
        """
        Deliver notifications claimed by ``claim_pending``.

        Returns:
            (sent_count, failed_count, skipped_count)
        """
        if not notification_ids:
            return 0, 0, 0
        result = await self._session.execute(
            select(Notification)
            .where(
                Notification.id.in_(notification_ids),
                Notification.push_status == PushStatus.SENDING,
            )
            .order_by(Notification.created_at.asc())
            .execution_options(populate_existing=True)
        )
        notifications = result.scalars().all()

        counts = {PushStatus.SENT: 0, PushStatus.FAILED: 0, PushStatus.SKIPPED: 0}
        for notification in notifications:
            outcome = await self.deliver(notification)
            counts[outcome.status] = counts.get(outcome.status, 0) + 1

        await self._session.flush()
        return counts[PushStatus.SENT], counts[PushStatus.FAILED], counts[PushStatus.SKIPPED]

    async def deliver_pending(
        self,
        batch_size: int = 100,
        lease_seconds: float = DEFAULT_PUSH_LEASE_SECONDS,
    ) -> tuple[int, int, int]:
        """Claim and deliver in the caller's transaction."""
        claimed = await self.claim_pending(batch_size, lease_seconds)
        return await self.deliver_claimed(claimed)

    async def mark_read(self, notification_id: UUID, user_id: UUID) -> Notification:
        """Mark a notification read. Only the addressee may do this."""
        notification = await self._session.get(Notification, notification_id)
        if not notification:
            raise NotificationNotFoundError()
        if notification.user_id != user_id:
            raise NotificationOwnershipError()
        notification.is_read = True
        await self._session.flush()
        return notification

    async def list_unread(self, user_id: UUID, limit: int) -> list[Notification]:
        result = await self._session.execute(
            select(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _attempt_push(self, notification: Notification) -> PushResult:
        if not self._push_channel.is_configured:
            return PushResult(PushStatus.SKIPPED, "Push not configured")

        recipient = await self._session.get(User, notification.user_id)
        if not recipient or not recipient.fcm_token:
            return PushResult(PushStatus.SKIPPED, "No device token")

        title, body = render_push(notification.type, notification.payload or {})
        data = {
            "notification_id": str(notification.id),
            "type": notification.type.value,
            **{k: str(v) for k, v in (notification.payload or {}).items()},
        }
        success, error = await self._push_channel.send(recipient.fcm_token, title, body, data)
        if success:
            return PushResult(PushStatus.SENT)
        return PushResult(PushStatus.FAILED, error)


def _claimable_pushes(lease_seconds: float):
    abandoned_before = utcnow() - timedelta(seconds=lease_seconds)
    return or_(
        Notification.push_status == PushStatus.PENDING,
        and_(
            Notification.push_status == PushStatus.SENDING,
            Notification.push_claimed_at < abandoned_before,
        ),
    )


def _json_safe(payload: dict[str, Any]) -> dict[str, Any]:
    """UUIDs in payloads are stored as strings."""
    return {k: str(v) if isinstance(v, UUID) else v for k, v in payload.items()}
