"""Shared typed values passed between the batch pipeline services."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal, TypedDict

BatchMode = Literal["inline", "file"]


class ContentPart(TypedDict):
    text: str


class Content(TypedDict):
    role: Literal["user"]
    parts: list[ContentPart]


class BatchRequest(TypedDict):
    contents: list[Content]
    config: dict[str, Any]


class PreparedGroup(TypedDict):
    key: str
    municipality: str | None
    state: str | None
    position: str | None
    rows: list[Any]


class TokenEstimate(TypedDict):
    total: int
    per_request: list[int]


class BatchState(StrEnum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class BatchPoll:
    state: BatchState
    raw_state: str
    job_name: str = ""
    error_detail: str | None = None
    # The SDK's job object; results are read from it without a second fetch.
    job: Any = None


@dataclass(frozen=True)
class SubmittedBatch:
    job_name: str
    mode: BatchMode


@dataclass(frozen=True)
class ItemText:
    text: str


@dataclass(frozen=True)
class ItemError:
    detail: str


@dataclass(frozen=True)
class ItemMissing:
    """No text and no error came back for this key."""


ItemResult = ItemText | ItemError | ItemMissing


@dataclass(frozen=True)
class SubmissionOutcome:
    batch: SubmittedBatch
    model: str
    fallback_used: bool
