"""Core application utilities.

``dependencies`` wires services into FastAPI and is imported directly by the
routers, not re-exported here.
"""

from .config import Settings, get_settings
from .database import (
    async_session_factory,
    build_engine,
    build_session_factory,
    close_db,
    engine,
    get_session,
    get_session_factory,
    init_db,
    session_scope,
)
from .security import (
    TokenPayload,
    create_access_token,
    decode_token,
    verify_service_key,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "engine",
    "async_session_factory",
    "build_engine",
    "build_session_factory",
    "get_session",
    "get_session_factory",
    "session_scope",
    "init_db",
    "close_db",
    # Security
    "TokenPayload",
    "create_access_token",
    "decode_token",
    "verify_service_key",
]
