"""Scheduled trigger for the batch orchestrator."""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ballotbatch.api.deps import get_settings
from ballotbatch.config import BatchSettings
from ballotbatch.db import get_session
from ballotbatch.schemas.batch import TriggerResponse
from ballotbatch.services.orchestrator import run_batch_cycle

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/gemini-batch")
def probe() -> dict[str, Any]:
    return {"ok": True, "message": "Use POST"}


@router.post("/gemini-batch", response_model_exclude_none=True)
def trigger(
    db: Session = Depends(get_session),
    settings: BatchSettings = Depends(get_settings),
) -> TriggerResponse:
    """Advance every in-flight batch job by at most one stage."""
    return run_batch_cycle(db, settings)
