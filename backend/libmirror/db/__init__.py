"""Database package for libmirror."""

from libmirror.db.base import Base
from libmirror.db.session import async_session_maker, engine, get_db, init_db

__all__ = [
    "Base",
    "async_session_maker",
    "engine",
    "get_db",
    "init_db",
]
