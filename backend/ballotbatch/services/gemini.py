"""Gemini Batch API gateway — submit, poll and read per-key results."""

import json
import logging
import os
import tempfile
from typing import Any

from google import genai

from ballotbatch.config import BatchSettings
from ballotbatch.services.types import (
    BatchMode,
    BatchPoll,
    BatchRequest,
    BatchState,
    ItemError,
    ItemMissing,
    ItemResult,
    ItemText,
    SubmissionOutcome,
    SubmittedBatch,
)

logger = logging.getLogger(__name__)

INLINE_SIZE_LIMIT = 18 * 1024 * 1024  # under the 20MB inline request cap

_STATE_MAP = {
    "JOB_STATE_SUCCEEDED": BatchState.SUCCEEDED,
    "JOB_STATE_PARTIALLY_SUCCEEDED": BatchState.SUCCEEDED,
    "JOB_STATE_FAILED": BatchState.FAILED,
    "JOB_STATE_EXPIRED": BatchState.FAILED,
    "JOB_STATE_CANCELLED": BatchState.CANCELLED,
}

_SCHEMA_TYPES = {"object", "array", "string", "number", "integer", "boolean", "null"}

INFERENCE_UNAVAILABLE = "Gemini disabled or missing API key"


class SubmissionError(Exception):
    """Raised when Gemini does not accept a batch submission."""


class InferenceUnavailableError(Exception):
    """Raised when GEMINI_ENABLED is off or no API key is configured."""

    def __init__(self, message: str = INFERENCE_UNAVAILABLE) -> None:
        super().__init__(message)


def make_client(settings: BatchSettings) -> genai.Client:
    if not settings.gemini_api_key:
        raise ValueError("GEMINI_API_KEY environment variable is not set")
    return genai.Client(api_key=settings.gemini_api_key)


class GeminiBatchGateway:
    """Thin wrapper over ``client.batches`` / ``client.files``.

    Timeouts and transport retries belong to the SDK client; every method
    here may raise and callers treat that as a job-level failure.
    """

    def __init__(self, client: genai.Client) -> None:
        self._client = client

    def submit(
        self,
        model: str,
        display_name: str,
        requests: list[BatchRequest],
        keys: list[str],
    ) -> SubmittedBatch:
        """Create a batch job. Small payloads go inline, larger ones via an uploaded JSONL file."""
        inline_payload = [
            {"contents": r["contents"], "config": r.get("config") or {}} for r in requests
        ]
        inline_size = len(json.dumps(inline_payload).encode("utf-8"))

        if inline_size <= INLINE_SIZE_LIMIT:
            batch = self._client.batches.create(
                model=model,
                src=inline_payload,  # type: ignore[arg-type]
                config={"display_name": display_name},
            )
            mode: BatchMode = "inline"
        else:
            file_name = self._upload_jsonl(requests, keys)
            batch = self._client.batches.create(
                model=model,
                src=file_name,
                config={"display_name": display_name},
            )
            mode = "file"

        job_name = batch.name or ""
        if not job_name:
            raise SubmissionError("Gemini batch job missing name")
        logger.info("Gemini batch created: %s (model=%s, mode=%s, %d requests)", job_name, model, mode, len(requests))
        return SubmittedBatch(job_name=job_name, mode=mode)

    def _upload_jsonl(self, requests: list[BatchRequest], keys: list[str]) -> str:
        lines = [
            json.dumps(
                {
                    "key": keys[idx] if idx < len(keys) else f"group-{idx}",
                    "index": idx,
                    "request": {
                        "contents": request["contents"],
                        "generation_config": request.get("config") or {},
                    },
                }
            )
            for idx, request in enumerate(requests)
        ]
        fd, tmp_path = tempfile.mkstemp(prefix="gemini-batch-", suffix=".jsonl")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write("\n".join(lines))
            uploaded = self._client.files.upload(file=tmp_path, config={"mime_type": "jsonl"})
        finally:
            try:
                os.unlink(tmp_path)
            except OSError:
                logger.warning("could not remove temp batch file %s", tmp_path)
        if not uploaded.name:
            raise SubmissionError("Gemini file upload returned no name")
        logger.info("uploaded batch input file %s (%d lines)", uploaded.name, len(lines))
        return uploaded.name

    def poll(self, job_name: str) -> BatchPoll:
        batch = self._client.batches.get(name=job_name)
        raw_state = _state_name(batch.state)
        state = _STATE_MAP.get(raw_state, BatchState.RUNNING)
        error_detail = None
        if state in (BatchState.FAILED, BatchState.CANCELLED):
            error_detail = extract_error(getattr(batch, "error", None)) or raw_state
        logger.info("batch %s state: %s", job_name, raw_state)
        return BatchPoll(state=state, raw_state=raw_state, error_detail=error_detail, job=batch, job_name=job_name)

    def fetch_results(self, poll: BatchPoll, mode: BatchMode, keys: list[str]) -> list[ItemResult]:
        """Return one result per key, aligned with *keys*."""
        job = poll.job if poll.job is not None else self._client.batches.get(name=poll.job_name)
        texts: list[str | None] = [None] * len(keys)
        errors: list[str | None] = [None] * len(keys)
        key_index = {key: idx for idx, key in enumerate(keys)}

        dest = getattr(job, "dest", None)
        inlined = getattr(dest, "inlined_responses", None) if dest is not None else None
        if inlined:
            for idx, item in enumerate(inlined):
                if idx >= len(keys):
                    break
                texts[idx] = extract_text(_field(item, "response"))
                errors[idx] = extract_error(_field(item, "error"))
        elif mode == "file":
            file_name = getattr(dest, "file_name", None) if dest is not None else None
            if file_name:
                raw = self._client.files.download(file=file_name)
                content = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
                for line in content.splitlines():
                    if not line.strip():
                        continue
                    try:
                        parsed = json.loads(line)
                    except json.JSONDecodeError as exc:
                        logger.warning("failed to parse Gemini batch line: %s", exc)
                        continue
                    target = key_index.get(parsed.get("key"))
                    if target is None and isinstance(parsed.get("index"), int):
                        target = parsed["index"]
                    if target is None or not 0 <= target < len(keys):
                        continue
                    if parsed.get("error"):
                        errors[target] = extract_error(parsed["error"])
                    elif parsed.get("response"):
                        texts[target] = extract_text(parsed["response"])

        results: list[ItemResult] = []
        for text, error in zip(texts, errors):
            if error:
                results.append(ItemError(error))
            elif text:
                results.append(ItemText(text))
            else:
                results.append(ItemMissing())
        return results


# ── Response decoding ─────────────────────────────────────────────────────────


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _state_name(state: Any) -> str:
    if state is None:
        return "unknown"
    name = getattr(state, "name", None)
    return name if isinstance(name, str) else str(state)


def extract_text(response: Any) -> str | None:
    """Pull text out of a response object or its JSON form; ``None`` when there is none."""
    if response is None:
        return None
    text = _field(response, "text")
    if isinstance(text, str):
        return text
    candidates = _field(response, "candidates")
    if isinstance(candidates, list) and candidates:
        first = candidates[0]
        content = _field(first, "content")
        parts = _field(content, "parts") if content is not None else _field(first, "parts")
        if isinstance(parts, list):
            texts = [t for t in (_field(p, "text") for p in parts) if isinstance(t, str)]
            if texts:
                return "".join(texts)
    return None


def extract_error(error: Any) -> str | None:
    if not error:
        return None
    if isinstance(error, str):
        return error
    message = _field(error, "message")
    if message:
        return str(message)
    details = _field(error, "details")
    if isinstance(details, list) and details:
        return "; ".join(str(d) for d in details)
    if isinstance(error, dict):
        return json.dumps(error)
    return str(error)


def strip_code_fence(raw_text: str) -> str:
    """Remove an optional markdown code fence around a JSON payload."""
    raw = raw_text.strip()
    if raw.startswith("```"):
        raw = raw.split("```", 2)[1]
        if raw.startswith("json"):
            raw = raw[4:]
        raw = raw.rsplit("```", 1)[0].strip()
    return raw


def convert_schema(node: Any) -> dict[str, Any]:
    """Translate a JSON-schema document into the subset Gemini's ``response_schema`` accepts."""
    if not isinstance(node, dict):
        return {}
    output: dict[str, Any] = {}
    node_type = node.get("type")
    if isinstance(node_type, str) and node_type.lower() in _SCHEMA_TYPES:
        output["type"] = node_type.upper()
    if isinstance(node.get("enum"), list):
        output["enum"] = [str(v) for v in node["enum"]]
    if isinstance(node.get("required"), list):
        output["required"] = node["required"]
    if isinstance(node.get("properties"), dict):
        output["properties"] = {k: convert_schema(v) for k, v in node["properties"].items()}
    if node.get("items"):
        output["items"] = convert_schema(node["items"])
    return output


def submit_with_fallback(
    gateway: GeminiBatchGateway,
    settings: BatchSettings,
    display_name: str,
    requests: list[BatchRequest],
    keys: list[str],
) -> SubmissionOutcome | None:
    """Submit under the primary model, then the fallback model if the first submission raises.

    Returns None when every attempt failed.
    """
    attempts = [(settings.model, False)]
    if settings.fallback_model and settings.fallback_model != settings.model:
        attempts.append((settings.fallback_model, True))

    for model, is_fallback in attempts:
        try:
            batch = gateway.submit(model, display_name, requests, keys)
        except Exception as exc:
            logger.error("failed to start batch %s with model %s: %s", display_name, model, exc)
            continue
        if is_fallback:
            logger.warning("batch %s submitted with fallback model %s", display_name, model)
        return SubmissionOutcome(batch=batch, model=model, fallback_used=is_fallback)
    return None
