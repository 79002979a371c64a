"""
TrustGate database engine and session factory
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from trustgate.core.config import Settings, settings as default_settings
from trustgate.core.logging import get_logger
from trustgate.database.models import Base

logger = get_logger(__name__)


def create_database_engine(
    database_url: Optional[str] = None,
    echo: Optional[bool] = None,
    config: Optional[Settings] = None
) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads"""
    config = config or default_settings
    url = database_url or config.DATABASE_URL
    echo = config.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_database(engine: Engine) -> None:
    """Create every TrustGate table that does not exist yet"""
    # Table classes register themselves on Base.metadata at import
    from trustgate.security import models  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info(f"Database schema ready on {engine.url.render_as_string(hide_password=True)}")
