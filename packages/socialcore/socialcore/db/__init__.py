from __future__ import annotations

from .base import Base
from .session import ERROR_DATABASE_URL_REQUIRED, SessionLocal, engine, get_database_url, get_engine

__all__ = [
    "Base",
    "ERROR_DATABASE_URL_REQUIRED",
    "SessionLocal",
    "engine",
    "get_database_url",
    "get_engine",
]
