"""Persistence for batch jobs and their groups.

Every job status change goes through :meth:`JobStore.transition`, which
refuses edges that are not in ``ALLOWED_TRANSITIONS``. The store assumes a
single writer: there is no row lock or version column, so two concurrent
orchestrator runs could both advance the same job.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import InstrumentedAttribute, Session, selectinload

from ballotbatch.models.batch_group import BatchGroup, GroupStatus
from ballotbatch.models.batch_job import (
    ACTIVE_JOB_STATUSES,
    BatchJob,
    JobStatus,
    can_transition,
)
from ballotbatch.services.types import PreparedGroup

logger = logging.getLogger(__name__)

_SENTINEL_FIELDS = ("analyze_email_sent_at", "ingest_email_sent_at")


class InvalidTransitionError(Exception):
    """Raised when a job status change is not an edge of the state machine."""


class BatchNotFoundError(Exception):
    """Raised when the requested batch job does not exist."""


def utcnow() -> datetime:
    return datetime.now(tz=UTC).replace(tzinfo=None)


class JobStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ── Reads ─────────────────────────────────────────────────────────────────

    def list_jobs(
        self,
        status: JobStatus,
        order_by: InstrumentedAttribute[Any],
        limit: int,
    ) -> list[BatchJob]:
        """Return up to *limit* jobs in *status*, oldest *order_by* first, groups preloaded."""
        stmt = (
            select(BatchJob)
            .where(BatchJob.status == status)
            .order_by(order_by.asc(), BatchJob.id.asc())
            .limit(limit)
            .options(selectinload(BatchJob.groups))
        )
        return list(self.db.scalars(stmt).all())

    def get_job(self, job_id: int) -> BatchJob:
        job = self.db.get(BatchJob, job_id)
        if job is None:
            raise BatchNotFoundError(f"Batch job {job_id} not found")
        return job

    def active_token_sum(self) -> int:
        """Sum of ``estimated_tokens`` over every job still holding budget."""
        stmt = select(func.coalesce(func.sum(BatchJob.estimated_tokens), 0)).where(
            BatchJob.status.in_([s.value for s in ACTIVE_JOB_STATUSES]),
            BatchJob.estimated_tokens.is_not(None),
        )
        return int(self.db.scalar(stmt) or 0)

    # ── Writes ────────────────────────────────────────────────────────────────

    def create_job(
        self,
        *,
        uploader_email: str,
        display_name: str | None,
        force_hidden: bool,
        structure_prompt: str | None,
        response_schema: dict[str, Any] | None,
        groups: list[PreparedGroup],
    ) -> BatchJob:
        job = BatchJob(
            status=JobStatus.PENDING_ANALYZE,
            uploader_email=uploader_email,
            display_name=display_name,
            force_hidden=force_hidden,
            structure_prompt=structure_prompt,
            response_schema=response_schema,
            structure_fallback_used=False,
        )
        job.groups = [
            BatchGroup(
                order=idx,
                key=g["key"],
                municipality=g["municipality"],
                state=g["state"],
                position=g["position"],
                rows=g["rows"],
                status=GroupStatus.PENDING,
            )
            for idx, g in enumerate(groups)
        ]
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info("BatchJob %s persisted with %d groups (status=%s)", job.id, len(job.groups), job.status)
        return job

    def transition(self, job: BatchJob, target: JobStatus, **fields: Any) -> BatchJob:
        """Move *job* to *target*, apply *fields* and commit.

        Raises InvalidTransitionError if the edge is not allowed.
        """
        if not can_transition(job.status, target):
            raise InvalidTransitionError(f"Batch job {job.id}: {job.status} -> {target} is not allowed")
        previous = job.status
        self._apply(job, fields)
        job.status = target
        job.last_processed_at = fields.get("last_processed_at") or utcnow()
        self.db.commit()
        logger.info("BatchJob %s %s -> %s", job.id, previous, target)
        return job

    def fail(self, job: BatchJob, error_field: str, detail: str) -> BatchJob:
        logger.warning("BatchJob %s failed (%s): %s", job.id, error_field, detail)
        return self.transition(job, JobStatus.FAILED, **{error_field: detail})

    def update_job(self, job: BatchJob, **fields: Any) -> BatchJob:
        """Apply non-status *fields* to *job* and commit."""
        if "status" in fields:
            raise InvalidTransitionError("use transition() to change job status")
        self._apply(job, fields)
        self.db.commit()
        return job

    def update_group(self, group: BatchGroup, **fields: Any) -> None:
        """Stage *fields* on *group*; committed with the next job write."""
        for name, value in fields.items():
            setattr(group, name, value)

    def bulk_update_groups(self, job_id: int, from_status: GroupStatus, **fields: Any) -> int:
        """Update every group of *job_id* in *from_status*; committed with the next job write.

        Returns rows affected.
        """
        result = self.db.execute(
            update(BatchGroup)
            .where(BatchGroup.job_id == job_id, BatchGroup.status == from_status)
            .values(**fields)
        )
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    def list_unnotified_completed(self, limit: int, exclude: set[int]) -> list[BatchJob]:
        """COMPLETED jobs whose ingest email has not gone out yet, oldest first."""
        stmt = (
            select(BatchJob)
            .where(
                BatchJob.status == JobStatus.COMPLETED,
                BatchJob.ingest_email_sent_at.is_(None),
                BatchJob.id.not_in(sorted(exclude)),
            )
            .order_by(BatchJob.ingest_completed_at.asc(), BatchJob.id.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    @staticmethod
    def _apply(job: BatchJob, fields: dict[str, Any]) -> None:
        for name, value in fields.items():
            if name in _SENTINEL_FIELDS and value is None and getattr(job, name) is not None:
                raise ValueError(f"{name} is already set and cannot be cleared")
            setattr(job, name, value)
