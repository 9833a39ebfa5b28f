"""Shared pytest fixtures."""

from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ballotbatch.config import BatchSettings
from ballotbatch.db import create_tables
from ballotbatch.models.batch_group import BatchGroup, GroupStatus
from ballotbatch.models.batch_job import BatchJob, JobStatus


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    """Real session on a private in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def settings() -> BatchSettings:
    return BatchSettings(
        app_env="test",
        gemini_enabled=True,
        gemini_api_key="test-key",
        team_email="team@example.org",
        email_dry_run=False,
        resend_api_key="re_test",
    )


@pytest.fixture()
def mock_gateway() -> MagicMock:
    """Mock GeminiBatchGateway."""
    return MagicMock()


@pytest.fixture()
def mock_notifier() -> MagicMock:
    """Mock ResendNotifier."""
    return MagicMock()


@pytest.fixture()
def mock_ingestor() -> MagicMock:
    """Mock StructuredIngestService."""
    return MagicMock()


@pytest.fixture()
def mock_httpx_client() -> MagicMock:
    """Mock httpx client."""
    return MagicMock()


def _add_job(
    db: Session,
    status: JobStatus,
    groups: list[dict[str, Any]] | None = None,
    **fields: Any,
) -> BatchJob:
    """Insert a job directly in *status* with the given group rows (bypasses the state machine)."""
    fields.setdefault("uploader_email", "uploader@example.org")
    job = BatchJob(status=status, **fields)
    job.groups = [
        BatchGroup(
            order=idx,
            key=g.pop("key", f"city{idx}|st|council"),
            status=g.pop("status", GroupStatus.PENDING),
            rows=g.pop("rows", [{"firstName": "Ada", "lastName": "Lovelace"}]),
            **g,
        )
        for idx, g in enumerate(dict(g) for g in (groups or []))
    ]
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


@pytest.fixture()
def make_job(db: Session) -> Any:
    """Factory fixture: ``make_job(JobStatus.X, groups=[...], **fields)``."""

    def factory(status: JobStatus, groups: list[dict[str, Any]] | None = None, **fields: Any) -> BatchJob:
        return _add_job(db, status, groups, **fields)

    return factory
