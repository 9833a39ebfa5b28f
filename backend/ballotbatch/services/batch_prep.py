"""Prompt assembly and row grouping for the analyze and structure batches."""

import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

from ballotbatch.config import BatchSettings
from ballotbatch.models.batch_group import BatchGroup
from ballotbatch.services.gemini import convert_schema
from ballotbatch.services.types import BatchRequest, PreparedGroup

_BACKEND_DIR = Path(__file__).resolve().parent.parent.parent
_WHITESPACE = re.compile(r"\s+")


# ── Prompts ───────────────────────────────────────────────────────────────────


def _resolve(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else _BACKEND_DIR / p


@lru_cache(maxsize=8)
def load_prompt(path: str) -> str:
    return _resolve(path).read_text(encoding="utf-8")


@lru_cache(maxsize=8)
def _load_schema_text(path: str) -> str:
    return _resolve(path).read_text(encoding="utf-8")


def load_response_schema(path: str) -> dict[str, Any]:
    """Read a JSON-schema file and convert it to Gemini's response-schema subset."""
    return convert_schema(json.loads(_load_schema_text(path)))


# ── Grouping ──────────────────────────────────────────────────────────────────


def _clean(value: object) -> str:
    return str(value if value is not None else "").strip()


def group_key_for_row(row: dict[str, Any]) -> str:
    """Return the ``city|state|position`` key used to bucket spreadsheet rows."""
    city = _clean(row.get("municipality")).lower()
    state = _clean(row.get("state")).lower()
    position = _WHITESPACE.sub(" ", _clean(row.get("position"))).lower()
    return f"{city}|{state}|{position or 'unknown-position'}"


def limit_rows(rows: list[Any], limit: int, fallback: int) -> list[Any]:
    if not isinstance(rows, list):
        return []
    return rows[: limit if limit > 0 else fallback]


def group_rows(rows: list[dict[str, Any]], max_rows: int) -> list[PreparedGroup]:
    """Bucket rows by municipality, state and position, sorted in that order of keys."""
    groups: dict[str, PreparedGroup] = {}
    for row in rows:
        key = group_key_for_row(row)
        if key not in groups:
            groups[key] = PreparedGroup(
                key=key,
                municipality=_clean(row.get("municipality")),
                state=_clean(row.get("state")),
                position=_clean(row.get("position")),
                rows=[],
            )
        groups[key]["rows"].append(dict(row))

    ordered = sorted(
        groups.values(),
        key=lambda g: (g["state"] or "", g["municipality"] or "", g["position"] or ""),
    )
    for group in ordered:
        group["rows"] = limit_rows(group["rows"], max_rows, 100)
    return ordered


def group_from_record(group: BatchGroup) -> PreparedGroup:
    return PreparedGroup(
        key=group.key,
        municipality=group.municipality,
        state=group.state,
        position=group.position,
        rows=group.rows if isinstance(group.rows, list) else [],
    )


# ── Requests ──────────────────────────────────────────────────────────────────


def _with_thinking(config: dict[str, Any], settings: BatchSettings) -> dict[str, Any]:
    if settings.thinking_enabled:
        config["thinking_config"] = {"thinking_budget": settings.thinking_budget}
    return config


def analyze_generation_config(settings: BatchSettings) -> dict[str, Any]:
    return _with_thinking(
        {"temperature": 0, "max_output_tokens": settings.max_output_tokens}, settings
    )


def structure_generation_config(
    settings: BatchSettings, response_schema: dict[str, Any] | None
) -> dict[str, Any]:
    return _with_thinking(
        {
            "temperature": 0,
            "response_mime_type": "application/json",
            "response_schema": response_schema or {},
            "max_output_tokens": settings.max_output_tokens,
        },
        settings,
    )


def build_analyze_request(
    prompt: str, group: PreparedGroup, config: dict[str, Any]
) -> BatchRequest:
    rows_block = f"\n\nElection details input (JSON rows):\n{json.dumps(group['rows'], indent=2)}\n"
    return BatchRequest(
        contents=[{"role": "user", "parts": [{"text": prompt + rows_block}]}],
        config=dict(config),
    )


def build_structure_request(
    prompt: str,
    analyze_text: str,
    group: PreparedGroup,
    config: dict[str, Any],
) -> BatchRequest:
    """Assemble one structuring prompt: instructions, the analyze output, then the raw rows."""
    parts = [
        {"text": prompt},
        {"text": f"\n\nAttached data (from previous step):\n{analyze_text}"},
    ]
    if isinstance(group["rows"], list):
        parts.append(
            {
                "text": "\n\nOriginal spreadsheet rows (may include email to preserve):\n"
                + json.dumps(group["rows"], indent=2)
            }
        )
    return BatchRequest(contents=[{"role": "user", "parts": parts}], config=dict(config))
