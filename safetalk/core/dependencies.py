"""FastAPI dependencies for authentication, sessions and service wiring."""

import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import User
from ..services.agents import AgentBackend, get_agent_backend
from ..services.issue_engine import IssueEngine
from ..services.notifications import FCMPushChannel, PushChannel
from ..services.users import UserService
from .config import get_settings
from .database import get_session, get_session_factory
from .security import decode_token, verify_service_key

logger = logging.getLogger(__name__)
settings = get_settings()

# Security scheme
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Depends(bearer_scheme)
    ],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> User:
    """Dependency to get the current authenticated user.

    The token subject identifies the caller; the first request from a new
    subject provisions the user with a fresh partner code.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return await UserService(session).get_or_create(
        auth_subject=payload.sub,
        email=payload.email,
        name=payload.name,
    )


def require_service_key(
    x_service_key: Annotated[str | None, Header()] = None,
) -> None:
    """Guard for service-level operations (internal notifications, mediator runs)."""
    if not verify_service_key(x_service_key):
        logger.warning("Rejected internal request with missing or invalid service key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service key",
        )


def provide_agent_backend() -> AgentBackend:
    return get_agent_backend(settings)


def provide_push_channel() -> PushChannel:
    return FCMPushChannel()


def get_issue_engine(
    session: Annotated[AsyncSession, Depends(get_session)],
    backend: Annotated[AgentBackend, Depends(provide_agent_backend)],
    push_channel: Annotated[PushChannel, Depends(provide_push_channel)],
) -> IssueEngine:
    return IssueEngine.from_backend(session, backend, push_channel, settings)


# Type aliases for cleaner dependency injection
CurrentUserDep = Annotated[User, Depends(get_current_user)]
SessionDep = Annotated[AsyncSession, Depends(get_session)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
AgentBackendDep = Annotated[AgentBackend, Depends(provide_agent_backend)]
PushChannelDep = Annotated[PushChannel, Depends(provide_push_channel)]
IssueEngineDep = Annotated[IssueEngine, Depends(get_issue_engine)]
ServiceKeyDep = Depends(require_service_key)
