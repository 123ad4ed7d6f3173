"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    close_db,
    create_engine,
    create_session_factory,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
)
from .dependencies import SessionDep, build_conversation_engine

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "create_engine",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # Dependencies
    "SessionDep",
    "build_conversation_engine",
]
