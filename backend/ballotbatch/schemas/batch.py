"""Pydantic schemas for the batch pipeline endpoints and run summaries."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class PhaseResult(BaseModel):
    """Counters and error descriptors produced by one orchestrator phase."""

    analyze_checked: int = 0
    analyze_completed: int = 0
    structure_started: int = 0
    structure_completed: int = 0
    ingested: int = 0
    errors: list[str] = Field(default_factory=list)


class RunSummary(PhaseResult):
    def merge(self, result: PhaseResult) -> "RunSummary":
        """Return a new summary with *result* added in."""
        return RunSummary(
            analyze_checked=self.analyze_checked + result.analyze_checked,
            analyze_completed=self.analyze_completed + result.analyze_completed,
            structure_started=self.structure_started + result.structure_started,
            structure_completed=self.structure_completed + result.structure_completed,
            ingested=self.ingested + result.ingested,
            errors=[*self.errors, *result.errors],
        )

    @property
    def ok(self) -> bool:
        return not self.errors


class TriggerResponse(BaseModel):
    ok: bool
    summary: RunSummary | None = None
    skipped: bool = False
    reason: str | None = None


class SpreadsheetRow(BaseModel):
    municipality: str = ""
    state: str = ""
    firstName: str = ""
    lastName: str = ""
    position: str = ""
    year: str | int = ""
    email: str = ""


class BatchSubmitRequest(BaseModel):
    rows: list[SpreadsheetRow] = Field(..., min_length=1)
    uploader_email: str = Field(..., min_length=1)
    display_name: str | None = None
    force_hidden: bool = False


class BatchGroupStatus(BaseModel):
    id: int
    order: int
    key: str
    status: str
    municipality: str | None
    state: str | None
    position: str | None
    analyze_error: str | None
    analyze_completed_at: datetime | None
    structure_error: str | None
    structure_completed_at: datetime | None
    structure_token_estimate: int | None
    structured: dict[str, Any] | None
    ingest_completed_at: datetime | None

    model_config = {"from_attributes": True}


class BatchJobStatus(BaseModel):
    id: int
    status: str
    display_name: str | None
    uploader_email: str
    force_hidden: bool
    analyze_job_name: str | None
    analyze_model: str | None
    analyze_submitted_at: datetime | None
    analyze_completed_at: datetime | None
    analyze_error: str | None
    structure_job_name: str | None
    structure_model: str | None
    structure_fallback_used: bool
    structure_submitted_at: datetime | None
    structure_completed_at: datetime | None
    structure_error: str | None
    estimated_tokens: int | None
    ingest_requested_at: datetime | None
    ingest_completed_at: datetime | None
    ingest_error: str | None
    analyze_email_sent_at: datetime | None
    ingest_email_sent_at: datetime | None
    last_processed_at: datetime | None
    notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class BatchDetail(BaseModel):
    job: BatchJobStatus
    groups: list[BatchGroupStatus]


class BatchSubmitResponse(BaseModel):
    job: BatchJobStatus
    group_count: int


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None
