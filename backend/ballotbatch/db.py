"""SQLAlchemy engine and session factory."""

import os
from collections.abc import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    pass


def _get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is not set")
    return url


def make_engine(database_url: str | None = None) -> Engine:
    url = database_url or _get_database_url()
    return create_engine(url)


# Module-level singletons, created lazily on first access via _get_engine().
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _get_engine() -> Engine:
    global _engine, _session_factory
    if _engine is None:
        _engine = make_engine()
        _session_factory = sessionmaker(bind=_engine, autocommit=False, autoflush=False)
    return _engine


def new_session() -> Session:
    """Open a standalone session (scripts and the cron trigger own its lifetime)."""
    _get_engine()
    assert _session_factory is not None
    return _session_factory()


def get_session() -> Generator[Session, None, None]:
    """Yield a database session and close it when the request is done."""
    session = new_session()
    try:
        yield session
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create all tables. Idempotent: safe to run on every startup."""
    # Import models so Base.metadata includes them before create_all().
    import ballotbatch.models.batch_group  # noqa: F401
    import ballotbatch.models.batch_job  # noqa: F401
    import ballotbatch.models.election  # noqa: F401

    Base.metadata.create_all(bind=engine or _get_engine())
