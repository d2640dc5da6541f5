"""Partner Pairing Registry.

Connects two accounts through a partner code. Both halves of the link are
written inside one savepoint with conditional updates, so either both users
end up pointing at each other or neither does.
"""

import logging
import re
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import NotificationType, User
from .errors import (
    AlreadyConnectedError,
    ConcurrencyError,
    InvalidPartnerCodeError,
    PartnerUnavailableError,
    SelfConnectionError,
)
from .notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

PARTNER_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")


@dataclass
class PartnerInfo:
    id: UUID
    name: str | None
    email: str


def normalize_partner_code(code: str) -> str:
    """Upper-case and validate a partner code."""
    normalized = (code or "").strip().upper()
    if not PARTNER_CODE_PATTERN.match(normalized):
        raise InvalidPartnerCodeError()
    return normalized


class PartnerRegistry:
    """Maintains the symmetric 1:1 link between partner accounts."""

    def __init__(self, session: AsyncSession, notifications: NotificationDispatcher):
        self._session = session
        self._notifications = notifications

    async def connect(self, requester: User, code: str) -> PartnerInfo:
        """
        Pair the requester with the owner of ``code``.

        Preconditions: the code resolves to another user and neither side is
        connected yet. Both users are notified on success.
        """
        partner_code = normalize_partner_code(code)

        if requester.connected_user_id:
            raise AlreadyConnectedError()

        result = await self._session.execute(
            select(User).where(User.partner_code == partner_code)
        )
        partner = result.scalar_one_or_none()
        if not partner:
            raise InvalidPartnerCodeError()
        if partner.id == requester.id:
            raise SelfConnectionError()
        if partner.connected_user_id:
            raise PartnerUnavailableError()

        async with self._session.begin_nested():
            linked = await self._link(requester.id, partner.id)
            if not linked:
                raise AlreadyConnectedError()
            linked = await self._link(partner.id, requester.id)
            if not linked:
                # Savepoint rollback undoes the requester's half
                raise PartnerUnavailableError()

        await self._session.refresh(requester)
        await self._session.refresh(partner)
        if requester.connected_user_id != partner.id or partner.connected_user_id != requester.id:
            raise ConcurrencyError("Pairing could not be confirmed")

        logger.info(f"Connected users {requester.id} and {partner.id}")

        await self._notifications.notify(
            requester.id,
            NotificationType.NEW_ISSUE,
            {"message": f"Connected with {partner.display_name}"},
        )
        await self._notifications.notify(
            partner.id,
            NotificationType.NEW_ISSUE,
            {"message": f"Connected with {requester.display_name}"},
        )

        return PartnerInfo(id=partner.id, name=partner.name, email=partner.email)

    async def _link(self, user_id: UUID, partner_id: UUID) -> bool:
        """Set one side of the link only if that side is still unpaired."""
        result = await self._session.execute(
            update(User)
            .where(User.id == user_id, User.connected_user_id.is_(None))
            .values(connected_user_id=partner_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
