"""User provisioning and partner codes."""

import logging
import secrets
import string
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import User
from .errors import UserNotFoundError

logger = logging.getLogger(__name__)

PARTNER_CODE_ALPHABET = string.ascii_uppercase + string.digits
PARTNER_CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 10


def generate_partner_code() -> str:
    """Random 6-character alphanumeric code."""
    return "".join(
        secrets.choice(PARTNER_CODE_ALPHABET) for _ in range(PARTNER_CODE_LENGTH)
    )


class UserService:
    """Looks up and creates users keyed by their identity-provider subject."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: UUID) -> User:
        user = await self.session.get(User, user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    async def get_by_subject(self, auth_subject: str) -> User | None:
        result = await self.session.execute(
            select(User).where(User.auth_subject == auth_subject)
        )
        return result.scalar_one_or_none()

    async def create_user(
        self,
        auth_subject: str,
        email: str,
        name: str | None = None,
    ) -> User:
        """Create a user with a fresh unique partner code.

        Collisions on the code are retried inside a savepoint so the
        surrounding transaction survives.
        """
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            user = User(
                auth_subject=auth_subject,
                email=email,
                name=name,
                partner_code=generate_partner_code(),
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(user)
                    await self.session.flush()
            except IntegrityError:
                existing = await self.get_by_subject(auth_subject)
                if existing:
                    return existing
                logger.warning(f"Partner code collision (attempt {attempt}), retrying")
                continue

            logger.info(f"Created user {user.id} ({email}) with partner code {user.partner_code}")
            return user

        raise RuntimeError("Could not allocate a unique partner code")

    async def get_or_create(
        self,
        auth_subject: str,
        email: str | None = None,
        name: str | None = None,
    ) -> User:
        """Get or create a user from a verified token payload."""
        user = await self.get_by_subject(auth_subject)
        if user:
            if name and user.name != name:
                user.name = name
            if email and user.email != email:
                user.email = email
            return user

        return await self.create_user(
            auth_subject=auth_subject,
            email=email or f"{auth_subject}@safetalk.local",
            name=name,
        )

    async def set_push_token(self, user: User, token: str | None) -> User:
        user.fcm_token = token or None
        await self.session.flush()
        return user
