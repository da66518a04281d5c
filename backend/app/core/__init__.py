"""Core module for configuration and utilities."""

from app.core.config import settings
from app.core.database import Base, create_engine, create_session_maker, get_session

__all__ = [
    "settings",
    "Base",
    "create_engine",
    "create_session_maker",
    "get_session",
]
