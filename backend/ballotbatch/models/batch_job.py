"""BatchJob ORM model — one spreadsheet upload moving through the Gemini batch pipeline."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, Index, Integer, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ballotbatch.db import Base

if TYPE_CHECKING:
    from ballotbatch.models.batch_group import BatchGroup

JsonType = JSON().with_variant(JSONB(), "postgresql")


class JobStatus(StrEnum):
    PENDING_ANALYZE = "PENDING_ANALYZE"
    ANALYZE_SUBMITTED = "ANALYZE_SUBMITTED"
    ANALYZE_COMPLETED = "ANALYZE_COMPLETED"
    STRUCTURE_SUBMITTED = "STRUCTURE_SUBMITTED"
    STRUCTURE_COMPLETED = "STRUCTURE_COMPLETED"
    INGEST_PENDING = "INGEST_PENDING"
    INGEST_RUNNING = "INGEST_RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Jobs in these states hold a share of the global enqueued-token budget.
ACTIVE_JOB_STATUSES = (
    JobStatus.PENDING_ANALYZE,
    JobStatus.ANALYZE_SUBMITTED,
    JobStatus.STRUCTURE_SUBMITTED,
    JobStatus.STRUCTURE_COMPLETED,
    JobStatus.INGEST_PENDING,
    JobStatus.INGEST_RUNNING,
)

_FORWARD_EDGES: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING_ANALYZE: frozenset({JobStatus.ANALYZE_SUBMITTED}),
    JobStatus.ANALYZE_SUBMITTED: frozenset({JobStatus.ANALYZE_COMPLETED}),
    JobStatus.ANALYZE_COMPLETED: frozenset({JobStatus.STRUCTURE_SUBMITTED}),
    JobStatus.STRUCTURE_SUBMITTED: frozenset({JobStatus.INGEST_PENDING}),
    JobStatus.STRUCTURE_COMPLETED: frozenset({JobStatus.INGEST_PENDING}),
    JobStatus.INGEST_PENDING: frozenset({JobStatus.INGEST_RUNNING}),
    JobStatus.INGEST_RUNNING: frozenset({JobStatus.COMPLETED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# FAILED is reachable from every non-terminal state.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    status: targets if status in TERMINAL_JOB_STATUSES else targets | {JobStatus.FAILED}
    for status, targets in _FORWARD_EDGES.items()
}


def can_transition(current: str, target: str) -> bool:
    try:
        return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]
    except ValueError:
        return False


class BatchJob(Base):
    __tablename__ = "batch_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=JobStatus.PENDING_ANALYZE)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploader_email: Mapped[str] = mapped_column(Text, nullable=False)
    force_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    analyze_job_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    analyze_mode: Mapped[str | None] = mapped_column(Text, nullable=True)
    analyze_model: Mapped[str | None] = mapped_column(Text, nullable=True)
    analyze_submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    analyze_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    analyze_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    structure_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_schema: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    structure_job_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    structure_mode: Mapped[str | None] = mapped_column(Text, nullable=True)
    structure_model: Mapped[str | None] = mapped_column(Text, nullable=True)
    structure_fallback_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    structure_submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    structure_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    structure_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

    ingest_requested_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ingest_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ingest_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Set once after a successful send; never cleared.
    analyze_email_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ingest_email_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    groups: Mapped[list[BatchGroup]] = relationship(
        "BatchGroup",
        back_populates="job",
        order_by="BatchGroup.order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("idx_batch_jobs_status", "status"),)
