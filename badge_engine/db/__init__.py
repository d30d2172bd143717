"""Database package."""

from badge_engine.db.models import (
    Achievement,
    Assertion,
    Base,
    Issuer,
    SigningKey,
    StatusList,
)
from badge_engine.db.session import (
    close_db,
    create_schema,
    get_background_session,
    get_session_factory,
    init_db,
)

__all__ = [
    "init_db",
    "close_db",
    "create_schema",
    "get_background_session",
    "get_session_factory",
    "Base",
    "Issuer",
    "Achievement",
    "Assertion",
    "SigningKey",
    "StatusList",
]
