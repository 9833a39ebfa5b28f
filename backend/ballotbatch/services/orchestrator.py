"""Batch inference orchestrator — one invocation advances every in-flight job by at most one stage.

The orchestrator keeps no state between invocations; everything lives in the
job store. Each call to :meth:`BatchOrchestrator.run` executes four phases in
order:

1. ``process_analyze_jobs``   ANALYZE_SUBMITTED   -> ANALYZE_COMPLETED | FAILED
2. ``start_structure_jobs``   ANALYZE_COMPLETED   -> STRUCTURE_SUBMITTED | FAILED
3. ``process_structure_jobs`` STRUCTURE_SUBMITTED -> INGEST_PENDING | FAILED
4. ``process_ingestion``      INGEST_PENDING      -> INGEST_RUNNING -> COMPLETED | FAILED

A phase that raises is recorded as ``"<phase>:<detail>"`` and the next phase
still runs. Inside a phase, an unexpected error for one job is recorded the
same way and its siblings are still processed.
"""

import json
import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Protocol

from sqlalchemy.orm import Session

from ballotbatch.config import BatchSettings, load_settings
from ballotbatch.models.batch_group import BatchGroup, GroupStatus
from ballotbatch.models.batch_job import BatchJob, JobStatus
from ballotbatch.schemas.batch import PhaseResult, RunSummary, TriggerResponse
from ballotbatch.schemas.structured import IngestResult
from ballotbatch.services.batch_prep import (
    build_structure_request,
    group_from_record,
    structure_generation_config,
)
from ballotbatch.services.gemini import (
    INFERENCE_UNAVAILABLE,
    GeminiBatchGateway,
    make_client,
    strip_code_fence,
    submit_with_fallback,
)
from ballotbatch.services.job_store import JobStore, utcnow
from ballotbatch.services.notifier import (
    ResendNotifier,
    analyze_completed_email,
    ingest_completed_email,
)
from ballotbatch.services.structured_ingest import StructuredIngestService
from ballotbatch.services.tokens import estimate_tokens_for_batch
from ballotbatch.services.types import BatchPoll, BatchState, ItemError, ItemText

logger = logging.getLogger(__name__)

SKIP_REASON = INFERENCE_UNAVAILABLE


class Notifier(Protocol):
    def send(self, recipients: list[str], subject: str, html_body: str) -> None: ...


class Ingestor(Protocol):
    def ingest(
        self, payload: dict[str, Any], hidden: bool, uploaded_by: str
    ) -> Sequence[IngestResult]: ...


def admits(estimate: int, active: int, ceiling: int) -> bool:
    """Admission rule for a new structure batch."""
    return estimate + active <= ceiling


def parse_structured(text: str) -> dict[str, Any]:
    """Decode a structure-stage response. Raises ValueError unless it is a JSON object."""
    data = json.loads(strip_code_fence(text))
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def aggregate_elections(groups: Sequence[BatchGroup]) -> list[Any]:
    """Concatenate the ``elections`` arrays of every STRUCTURE_COMPLETED group, in group order."""
    elections: list[Any] = []
    for group in groups:
        if group.status != GroupStatus.STRUCTURE_COMPLETED or not group.structured:
            continue
        value = group.structured.get("elections") if isinstance(group.structured, dict) else None
        if isinstance(value, list):
            elections.extend(value)
    return elections


class BatchOrchestrator:
    def __init__(
        self,
        store: JobStore,
        gateway: GeminiBatchGateway,
        notifier: Notifier,
        ingestor: Ingestor,
        settings: BatchSettings,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._ingestor = ingestor
        self._settings = settings

    def run(self) -> RunSummary:
        summary = RunSummary()
        phases: list[tuple[str, Callable[[], PhaseResult]]] = [
            ("analyze", self.process_analyze_jobs),
            ("structure-start", self.start_structure_jobs),
            ("structure", self.process_structure_jobs),
            ("ingest", self.process_ingestion),
        ]
        for label, phase in phases:
            try:
                result = phase()
            except Exception as exc:
                logger.exception("batch cycle: %s phase failed", label)
                self._store.db.rollback()
                result = PhaseResult(errors=[f"{label}:{exc}"])
            summary = summary.merge(result)
        logger.info(
            "batch cycle done: analyze %d/%d, structure started %d, structure completed %d, ingested %d, %d error(s)",
            summary.analyze_completed,
            summary.analyze_checked,
            summary.structure_started,
            summary.structure_completed,
            summary.ingested,
            len(summary.errors),
        )
        return summary

    # ── Phase A ───────────────────────────────────────────────────────────────

    def process_analyze_jobs(self) -> PhaseResult:
        result = PhaseResult()
        jobs = self._store.list_jobs(
            JobStatus.ANALYZE_SUBMITTED,
            BatchJob.analyze_submitted_at,
            self._settings.max_analyze_jobs_per_run,
        )
        pollable: list[BatchJob] = []
        for job in jobs:
            result.analyze_checked += 1
            if not job.analyze_job_name or not job.analyze_mode:
                self._store.fail(job, "analyze_error", "Missing analyze job reference")
                continue
            pollable.append(job)

        polls = self._poll_all(pollable, lambda j: j.analyze_job_name or "")
        for job in pollable:
            job_id = job.id
            poll = polls[job_id]
            if isinstance(poll, Exception):
                result.errors.append(f"analyze:job {job_id}: {poll}")
                continue
            try:
                if poll.state == BatchState.SUCCEEDED:
                    if self._apply_analyze_results(job, poll):
                        result.analyze_completed += 1
                elif poll.state in (BatchState.FAILED, BatchState.CANCELLED):
                    self._store.fail(job, "analyze_error", poll.error_detail or poll.raw_state)
            except Exception as exc:
                self._job_error(result, "analyze", job_id, exc)
        return result

    def _apply_analyze_results(self, job: BatchJob, poll: BatchPoll) -> bool:
        groups = list(job.groups)
        items = self._gateway.fetch_results(poll, job.analyze_mode or "inline", [g.key for g in groups])
        now = utcnow()
        success_count = 0
        for group, item in zip(groups, items):
            if isinstance(item, ItemText):
                success_count += 1
                self._store.update_group(
                    group,
                    analyze_text=item.text,
                    analyze_error=None,
                    status=GroupStatus.ANALYZE_COMPLETED,
                    analyze_completed_at=now,
                )
            else:
                detail = item.detail if isinstance(item, ItemError) else "Empty response"
                logger.warning("analyze result error for job %s group %s: %s", job.id, group.key, detail)
                self._store.update_group(
                    group,
                    analyze_error=detail,
                    status=GroupStatus.ANALYZE_FAILED,
                    analyze_completed_at=now,
                )

        if success_count == 0:
            self._store.transition(
                job,
                JobStatus.FAILED,
                analyze_completed_at=now,
                analyze_error="Analyze job produced no results",
            )
            return False

        self._store.transition(job, JobStatus.ANALYZE_COMPLETED, analyze_completed_at=now)
        logger.info("job %s analyze: %d/%d groups succeeded", job.id, success_count, len(groups))
        self._send_analyze_email(job, success_count)
        return True

    # ── Phase B ───────────────────────────────────────────────────────────────

    def start_structure_jobs(self) -> PhaseResult:
        result = PhaseResult()
        jobs = self._store.list_jobs(
            JobStatus.ANALYZE_COMPLETED,
            BatchJob.analyze_completed_at,
            self._settings.max_structure_jobs_per_run,
        )
        for job in jobs:
            job_id = job.id
            try:
                self._start_structure(job, result)
            except Exception as exc:
                self._job_error(result, "structure-start", job_id, exc)
        return result

    def _start_structure(self, job: BatchJob, result: PhaseResult) -> None:
        qualifying = [
            g for g in job.groups if g.status == GroupStatus.ANALYZE_COMPLETED and g.analyze_text
        ]
        if not qualifying:
            self._store.fail(job, "structure_error", "No analyze results available")
            return
        if not job.structure_prompt:
            self._store.fail(job, "structure_error", "Missing structure prompt")
            return

        # An analyze email that failed to send last cycle gets another chance here.
        self._send_analyze_email(job, len(qualifying))

        config = structure_generation_config(self._settings, job.response_schema)
        requests = [
            build_structure_request(job.structure_prompt, g.analyze_text or "", group_from_record(g), config)
            for g in qualifying
        ]
        keys = [g.key for g in qualifying]
        estimate = estimate_tokens_for_batch(requests)

        active = self._store.active_token_sum()
        if not admits(estimate["total"], active, self._settings.max_enqueued_tokens):
            logger.warning(
                "job %s deferred: %d estimated + %d active tokens exceeds %d",
                job.id,
                estimate["total"],
                active,
                self._settings.max_enqueued_tokens,
            )
            result.errors.append(f"structure-start:token limit reached for job {job.id}")
            return

        display_name = f"{job.display_name or 'gemini-structure'}-structure"
        outcome = submit_with_fallback(self._gateway, self._settings, display_name, requests, keys)
        if outcome is None:
            self._store.fail(job, "structure_error", "Unable to start structure batch job")
            return

        for group, tokens in zip(qualifying, estimate["per_request"]):
            self._store.update_group(
                group, structure_token_estimate=tokens, status=GroupStatus.STRUCTURE_RUNNING
            )
        self._store.transition(
            job,
            JobStatus.STRUCTURE_SUBMITTED,
            structure_job_name=outcome.batch.job_name,
            structure_mode=outcome.batch.mode,
            structure_model=outcome.model,
            structure_fallback_used=outcome.fallback_used,
            structure_submitted_at=utcnow(),
            estimated_tokens=estimate["total"],
        )
        result.structure_started += 1

    # ── Phase C ───────────────────────────────────────────────────────────────

    def process_structure_jobs(self) -> PhaseResult:
        result = PhaseResult()
        jobs = self._store.list_jobs(
            JobStatus.STRUCTURE_SUBMITTED,
            BatchJob.structure_submitted_at,
            self._settings.max_structure_jobs_per_run,
        )
        pollable: list[BatchJob] = []
        for job in jobs:
            if not job.structure_job_name or not job.structure_mode:
                self._store.fail(job, "structure_error", "Missing structure job reference")
                continue
            pollable.append(job)

        polls = self._poll_all(pollable, lambda j: j.structure_job_name or "")
        for job in pollable:
            job_id = job.id
            poll = polls[job_id]
            if isinstance(poll, Exception):
                result.errors.append(f"structure:job {job_id}: {poll}")
                continue
            try:
                if poll.state == BatchState.SUCCEEDED:
                    if self._apply_structure_results(job, poll):
                        result.structure_completed += 1
                elif poll.state in (BatchState.FAILED, BatchState.CANCELLED):
                    self._store.fail(job, "structure_error", poll.error_detail or poll.raw_state)
            except Exception as exc:
                self._job_error(result, "structure", job_id, exc)
        return result

    def _apply_structure_results(self, job: BatchJob, poll: BatchPoll) -> bool:
        running = [g for g in job.groups if g.status == GroupStatus.STRUCTURE_RUNNING]
        if not running:
            self._store.fail(job, "structure_error", "No structure groups in running state")
            return False

        items = self._gateway.fetch_results(poll, job.structure_mode or "inline", [g.key for g in running])
        now = utcnow()
        success_count = 0
        for group, item in zip(running, items):
            if isinstance(item, ItemText):
                try:
                    structured = parse_structured(item.text)
                except ValueError as exc:
                    logger.warning("job %s group %s returned invalid JSON: %s", job.id, group.key, exc)
                    self._store.update_group(
                        group,
                        structure_error=f"Invalid JSON: {exc}",
                        status=GroupStatus.STRUCTURE_FAILED,
                        structure_completed_at=now,
                    )
                    continue
                success_count += 1
                self._store.update_group(
                    group,
                    structure_text=item.text,
                    structured=structured,
                    structure_error=None,
                    status=GroupStatus.STRUCTURE_COMPLETED,
                    structure_completed_at=now,
                )
            else:
                detail = item.detail if isinstance(item, ItemError) else "Empty response"
                logger.warning("structure result error for job %s group %s: %s", job.id, group.key, detail)
                self._store.update_group(
                    group,
                    structure_error=detail,
                    status=GroupStatus.STRUCTURE_FAILED,
                    structure_completed_at=now,
                )

        if success_count == 0:
            self._store.transition(
                job,
                JobStatus.FAILED,
                structure_completed_at=now,
                structure_error=job.structure_error or "Structure job produced no valid output",
            )
            return False

        self._store.transition(
            job, JobStatus.INGEST_PENDING, structure_completed_at=now, structure_error=None
        )
        logger.info("job %s structure: %d/%d groups succeeded", job.id, success_count, len(running))
        return True

    # ── Phase D ───────────────────────────────────────────────────────────────

    def process_ingestion(self) -> PhaseResult:
        result = PhaseResult()
        jobs = self._store.list_jobs(
            JobStatus.INGEST_PENDING,
            BatchJob.structure_completed_at,
            self._settings.max_ingest_per_run,
        )
        handled: set[int] = set()
        for job in jobs:
            job_id = job.id
            handled.add(job_id)
            try:
                self._ingest(job, result)
            except Exception as exc:
                self._job_error(result, "ingest", job_id, exc)

        for job in self._store.list_unnotified_completed(self._settings.max_ingest_per_run, handled):
            self._send_ingest_email(job, _ingest_result_count(job.notes))
        return result

    def _ingest(self, job: BatchJob, result: PhaseResult) -> None:
        # INGEST_RUNNING is committed before anything is written. A job left in
        # it is never picked up again without a manual reset.
        self._store.transition(job, JobStatus.INGEST_RUNNING, ingest_requested_at=utcnow())

        elections = aggregate_elections(job.groups)
        if not elections:
            self._store.fail(job, "ingest_error", "No structured elections available")
            return

        job_id = job.id
        hidden = bool(job.force_hidden or self._settings.default_hidden)
        try:
            outcomes = list(self._ingestor.ingest({"elections": elections}, hidden, job.uploader_email))
        except Exception as exc:
            logger.exception("ingestion failed for job %s", job_id)
            detail = str(exc) or type(exc).__name__
            self._store.fail(job, "ingest_error", detail)
            result.errors.append(f"ingest:job {job_id}: {detail}")
            return

        now = utcnow()
        self._store.bulk_update_groups(
            job_id,
            GroupStatus.STRUCTURE_COMPLETED,
            status=GroupStatus.INGEST_COMPLETED,
            ingest_completed_at=now,
        )
        self._store.transition(
            job,
            JobStatus.COMPLETED,
            ingest_completed_at=now,
            ingest_error=None,
            notes=json.dumps({"ingestResults": [o.model_dump() for o in outcomes]}),
        )
        result.ingested += 1
        logger.info("job %s ingested %d election(s)", job_id, len(outcomes))
        self._send_ingest_email(job, len(outcomes))

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _poll_all(
        self,
        jobs: list[BatchJob],
        job_name: Callable[[BatchJob], str],
    ) -> dict[int, BatchPoll | Exception]:
        """Poll every job's batch concurrently (pure I/O); failures come back as the exception."""
        if not jobs:
            return {}
        outcomes: dict[int, BatchPoll | Exception] = {}
        with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
            futures = {pool.submit(self._gateway.poll, job_name(job)): job.id for job in jobs}
            for fut in as_completed(futures):
                job_id = futures[fut]
                try:
                    outcomes[job_id] = fut.result()
                except Exception as exc:
                    logger.error("failed to poll batch for job %s: %s", job_id, exc)
                    outcomes[job_id] = exc
        return outcomes

    def _job_error(self, result: PhaseResult, label: str, job_id: int, exc: Exception) -> None:
        logger.exception("%s: job %s failed unexpectedly", label, job_id)
        self._store.db.rollback()
        result.errors.append(f"{label}:job {job_id}: {exc}")

    def _recipients(self, job: BatchJob) -> list[str]:
        return [r for r in (job.uploader_email, self._settings.team_email) if r]

    def _send_analyze_email(self, job: BatchJob, success_count: int) -> None:
        if job.analyze_email_sent_at is not None:
            return
        subject, body = analyze_completed_email(job.id, job.display_name, success_count)
        if self._notify(job, subject, body):
            self._store.update_job(job, analyze_email_sent_at=utcnow())

    def _send_ingest_email(self, job: BatchJob, record_count: int) -> None:
        if job.ingest_email_sent_at is not None:
            return
        subject, body = ingest_completed_email(job.id, job.display_name, record_count)
        if self._notify(job, subject, body):
            self._store.update_job(job, ingest_email_sent_at=utcnow())

    def _notify(self, job: BatchJob, subject: str, body: str) -> bool:
        try:
            self._notifier.send(self._recipients(job), subject, body)
        except Exception as exc:
            logger.error("failed to send email for job %s (%s): %s", job.id, subject, exc)
            return False
        return True


def _ingest_result_count(notes: str | None) -> int:
    if not notes:
        return 0
    try:
        data = json.loads(notes)
    except json.JSONDecodeError:
        return 0
    results = data.get("ingestResults") if isinstance(data, dict) else None
    return len(results) if isinstance(results, list) else 0


def build_orchestrator(db: Session, settings: BatchSettings) -> BatchOrchestrator:
    return BatchOrchestrator(
        store=JobStore(db),
        gateway=GeminiBatchGateway(make_client(settings)),
        notifier=ResendNotifier(settings),
        ingestor=StructuredIngestService(db),
        settings=settings,
    )


def run_batch_cycle(
    db: Session,
    settings: BatchSettings | None = None,
    factory: Callable[[Session, BatchSettings], BatchOrchestrator] = build_orchestrator,
) -> TriggerResponse:
    """Run one full orchestrator invocation, or report why it was skipped."""
    settings = settings or load_settings()
    if not settings.inference_available:
        logger.info("batch cycle skipped: %s", SKIP_REASON)
        return TriggerResponse(ok=False, skipped=True, reason=SKIP_REASON)
    summary = factory(db, settings).run()
    return TriggerResponse(ok=summary.ok, summary=summary)
