"""Security utilities: bearer token encoding and decoding.

Credentials and sessions are owned by the identity provider; this module
only verifies the signed access tokens it issues and extracts the caller.
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone

import jwt
from pydantic import BaseModel, ValidationError

from .config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class TokenPayload(BaseModel):
    """JWT token payload."""

    sub: str  # Identity provider subject
    email: str | None = None
    name: str | None = None
    exp: datetime
    iat: datetime


def create_access_token(
    subject: str,
    email: str | None = None,
    name: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed access token (used by tests and local tooling)."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=30))

    payload = {
        "sub": subject,
        "email": email,
        "name": name,
        "exp": expire,
        "iat": now,
    }

    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> TokenPayload | None:
    """Decode and validate an access token. Returns None when invalid."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return TokenPayload(**payload)
    except jwt.PyJWTError as e:
        logger.debug(f"Token decode failed: {e}")
        return None
    except ValidationError as e:
        logger.warning(f"Token payload malformed: {e}")
        return None


def verify_service_key(provided: str | None) -> bool:
    """Constant-time check of the service-level API key."""
    expected = settings.service_api_key
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())
