"""Batch job submission and status API router."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ballotbatch.api.deps import get_gateway, get_settings
from ballotbatch.config import BatchSettings
from ballotbatch.db import get_session
from ballotbatch.schemas.batch import (
    BatchDetail,
    BatchGroupStatus,
    BatchJobStatus,
    BatchSubmitRequest,
    BatchSubmitResponse,
)
from ballotbatch.services.gemini import GeminiBatchGateway
from ballotbatch.services.job_store import JobStore
from ballotbatch.services.submission import submit_spreadsheet

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=202)
def submit_batch(
    body: BatchSubmitRequest,
    db: Session = Depends(get_session),
    settings: BatchSettings = Depends(get_settings),
    gateway: GeminiBatchGateway = Depends(get_gateway),
) -> BatchSubmitResponse:
    """Group the uploaded rows and start the analyze batch."""
    job = submit_spreadsheet(
        JobStore(db),
        settings,
        gateway,
        [row.model_dump() for row in body.rows],
        uploader_email=body.uploader_email,
        display_name=body.display_name,
        force_hidden=body.force_hidden,
    )
    return BatchSubmitResponse(job=BatchJobStatus.model_validate(job), group_count=len(job.groups))


@router.get("/{job_id}/status")
def batch_status(job_id: int, db: Session = Depends(get_session)) -> BatchDetail:
    job = JobStore(db).get_job(job_id)
    return BatchDetail(
        job=BatchJobStatus.model_validate(job),
        groups=[BatchGroupStatus.model_validate(g) for g in job.groups],
    )
