"""
Database engine, session factory and FastAPI session dependency.

The session factory is created once per process (see create_app) and
stored on app.state; each request gets its own session.
"""

import logging
from typing import Generator

from fastapi import HTTPException, Request, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from learnpass.db_base import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; SQLite needs cross-thread access under the test client."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables registered on the shared metadata."""
    import learnpass.models  # noqa: F401  (registers tables)

    Base.metadata.create_all(engine)
    logger.info("Database schema ensured", extra={"tables": sorted(Base.metadata.tables)})


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """Yield a request-scoped session from the app's session factory."""
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )
    session = factory()
    try:
        yield session
    finally:
        session.close()
