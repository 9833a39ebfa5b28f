"""Spreadsheet submission — groups uploaded rows and starts the analyze batch."""

import logging
from typing import Any

from ballotbatch.config import BatchSettings
from ballotbatch.models.batch_job import BatchJob, JobStatus
from ballotbatch.services.batch_prep import (
    analyze_generation_config,
    build_analyze_request,
    group_rows,
    load_prompt,
    load_response_schema,
)
from ballotbatch.services.gemini import GeminiBatchGateway, InferenceUnavailableError, submit_with_fallback
from ballotbatch.services.job_store import JobStore, utcnow

logger = logging.getLogger(__name__)


def submit_spreadsheet(
    store: JobStore,
    settings: BatchSettings,
    gateway: GeminiBatchGateway,
    rows: list[dict[str, Any]],
    uploader_email: str,
    display_name: str | None = None,
    force_hidden: bool = False,
) -> BatchJob:
    """Persist a new job for *rows* and submit its analyze batch.

    The job is always persisted; it ends ANALYZE_SUBMITTED, or FAILED when
    neither the primary nor the fallback model accepted the batch.
    Raises InferenceUnavailableError before touching the database when
    Gemini is disabled or has no API key, and ValueError if *rows* is empty.
    """
    if not settings.inference_available:
        raise InferenceUnavailableError()
    if not rows:
        raise ValueError("No rows to submit")

    groups = group_rows(rows, settings.max_rows_per_group)
    analyze_prompt = load_prompt(settings.analyze_prompt_path)
    structure_prompt = load_prompt(settings.structure_prompt_path)
    response_schema = load_response_schema(settings.structure_schema_path)

    job = store.create_job(
        uploader_email=uploader_email,
        display_name=display_name,
        force_hidden=force_hidden,
        structure_prompt=structure_prompt,
        response_schema=response_schema,
        groups=groups,
    )

    config = analyze_generation_config(settings)
    requests = [build_analyze_request(analyze_prompt, g, config) for g in groups]
    keys = [g["key"] for g in groups]
    logger.info("submitting analyze batch for job %s: %d group(s) from %d row(s)", job.id, len(groups), len(rows))

    outcome = submit_with_fallback(gateway, settings, display_name or "gemini-analyze", requests, keys)
    if outcome is None:
        return store.fail(job, "analyze_error", "Unable to start analyze batch job")

    return store.transition(
        job,
        JobStatus.ANALYZE_SUBMITTED,
        analyze_job_name=outcome.batch.job_name,
        analyze_mode=outcome.batch.mode,
        analyze_model=outcome.model,
        analyze_submitted_at=utcnow(),
    )
