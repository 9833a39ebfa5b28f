"""BatchGroup ORM model — one municipality/state/position slice of a BatchJob."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ballotbatch.db import Base
from ballotbatch.models.batch_job import JsonType

if TYPE_CHECKING:
    from ballotbatch.models.batch_job import BatchJob


class GroupStatus(StrEnum):
    PENDING = "PENDING"
    ANALYZE_COMPLETED = "ANALYZE_COMPLETED"
    ANALYZE_FAILED = "ANALYZE_FAILED"
    STRUCTURE_RUNNING = "STRUCTURE_RUNNING"
    STRUCTURE_COMPLETED = "STRUCTURE_COMPLETED"
    STRUCTURE_FAILED = "STRUCTURE_FAILED"
    INGEST_COMPLETED = "INGEST_COMPLETED"


class BatchGroup(Base):
    __tablename__ = "batch_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    # Correlation token for per-item batch results; unique within the job.
    key: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=GroupStatus.PENDING)

    municipality: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[str | None] = mapped_column(Text, nullable=True)
    rows: Mapped[list[Any]] = mapped_column(JsonType, nullable=False, default=list)

    analyze_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    analyze_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    analyze_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    structure_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    structured: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    structure_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    structure_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    structure_token_estimate: Mapped[int | None] = mapped_column(Integer, nullable=True)

    ingest_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    job: Mapped[BatchJob] = relationship("BatchJob", back_populates="groups")

    __table_args__ = (UniqueConstraint("job_id", "key", name="uq_batch_groups_job_key"),)
