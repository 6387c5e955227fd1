"""
Database package exposing session helpers and models.
"""

from . import models  # noqa: F401
from .session import Base, SessionLocal, engine, get_db, session_scope  # noqa: F401
