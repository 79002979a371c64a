"""
TrustGate database layer
"""

from .models import Base, TimestampMixin
from .session import create_database_engine, create_session_factory, init_database

__all__ = [
    "Base",
    "TimestampMixin",
    "create_database_engine",
    "create_session_factory",
    "init_database",
]
