"""Unit tests for GeminiBatchGateway and response decoding helpers."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from ballotbatch.config import BatchSettings
from ballotbatch.services.gemini import (
    GeminiBatchGateway,
    SubmissionError,
    convert_schema,
    extract_error,
    extract_text,
    make_client,
    strip_code_fence,
    submit_with_fallback,
)
from ballotbatch.services.types import (
    BatchPoll,
    BatchState,
    ItemError,
    ItemMissing,
    ItemText,
    SubmittedBatch,
)


def _request(text: str = "hello") -> dict:
    return {"contents": [{"role": "user", "parts": [{"text": text}]}], "config": {"temperature": 0}}


class TestSubmit:
    def test_small_payload_goes_inline(self) -> None:
        client = MagicMock()
        client.batches.create.return_value = SimpleNamespace(name="batches/123")

        batch = GeminiBatchGateway(client).submit("gemini-2.5-pro", "job-1", [_request()], ["k0"])

        assert batch == SubmittedBatch(job_name="batches/123", mode="inline")
        kwargs = client.batches.create.call_args.kwargs
        assert kwargs["model"] == "gemini-2.5-pro"
        assert kwargs["config"] == {"display_name": "job-1"}
        assert kwargs["src"][0]["contents"][0]["parts"][0]["text"] == "hello"
        client.files.upload.assert_not_called()

    def test_large_payload_is_uploaded_as_jsonl(self) -> None:
        client = MagicMock()
        client.files.upload.return_value = SimpleNamespace(name="files/abc")
        client.batches.create.return_value = SimpleNamespace(name="batches/456")
        uploaded: list[str] = []

        def _capture(file: str, config: dict) -> SimpleNamespace:
            with open(file, encoding="utf-8") as fh:
                uploaded.extend(fh.read().splitlines())
            return SimpleNamespace(name="files/abc")

        client.files.upload.side_effect = _capture

        with patch("ballotbatch.services.gemini.INLINE_SIZE_LIMIT", 10):
            batch = GeminiBatchGateway(client).submit("m", "job-2", [_request("a"), _request("b")], ["k0", "k1"])

        assert batch == SubmittedBatch(job_name="batches/456", mode="file")
        assert client.batches.create.call_args.kwargs["src"] == "files/abc"
        lines = [json.loads(line) for line in uploaded]
        assert [line["key"] for line in lines] == ["k0", "k1"]
        assert lines[1]["request"]["contents"][0]["parts"][0]["text"] == "b"

    def test_missing_job_name_raises(self) -> None:
        client = MagicMock()
        client.batches.create.return_value = SimpleNamespace(name=None)

        with pytest.raises(SubmissionError):
            GeminiBatchGateway(client).submit("m", "job", [_request()], ["k0"])


class TestPoll:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("JOB_STATE_SUCCEEDED", BatchState.SUCCEEDED),
            ("JOB_STATE_PARTIALLY_SUCCEEDED", BatchState.SUCCEEDED),
            ("JOB_STATE_FAILED", BatchState.FAILED),
            ("JOB_STATE_EXPIRED", BatchState.FAILED),
            ("JOB_STATE_CANCELLED", BatchState.CANCELLED),
            ("JOB_STATE_PENDING", BatchState.RUNNING),
            ("JOB_STATE_QUEUED", BatchState.RUNNING),
            ("JOB_STATE_PAUSED", BatchState.RUNNING),
            ("SOMETHING_NEW", BatchState.RUNNING),
        ],
    )
    def test_state_mapping(self, raw: str, expected: BatchState) -> None:
        client = MagicMock()
        client.batches.get.return_value = SimpleNamespace(state=SimpleNamespace(name=raw), error=None)

        poll = GeminiBatchGateway(client).poll("batches/1")

        assert poll.state == expected
        assert poll.raw_state == raw

    def test_failure_detail_comes_from_error_message(self) -> None:
        client = MagicMock()
        client.batches.get.return_value = SimpleNamespace(
            state=SimpleNamespace(name="JOB_STATE_FAILED"), error={"message": "quota exhausted"}
        )

        poll = GeminiBatchGateway(client).poll("batches/1")

        assert poll.error_detail == "quota exhausted"

    def test_failure_detail_defaults_to_state(self) -> None:
        client = MagicMock()
        client.batches.get.return_value = SimpleNamespace(state="JOB_STATE_CANCELLED", error=None)

        poll = GeminiBatchGateway(client).poll("batches/1")

        assert poll.error_detail == "JOB_STATE_CANCELLED"


class TestFetchResults:
    def test_inline_results_by_position(self) -> None:
        job = SimpleNamespace(
            dest=SimpleNamespace(
                inlined_responses=[
                    SimpleNamespace(response=SimpleNamespace(text="first"), error=None),
                    SimpleNamespace(response=None, error=SimpleNamespace(message="blocked", details=None)),
                    SimpleNamespace(response=None, error=None),
                ]
            )
        )
        poll = BatchPoll(state=BatchState.SUCCEEDED, raw_state="JOB_STATE_SUCCEEDED", job=job)

        results = GeminiBatchGateway(MagicMock()).fetch_results(poll, "inline", ["a", "b", "c"])

        assert results == [ItemText("first"), ItemError("blocked"), ItemMissing()]

    def test_file_results_by_key_then_index(self) -> None:
        lines = [
            json.dumps({"key": "b", "response": {"candidates": [{"content": {"parts": [{"text": "B"}]}}]}}),
            "not json",
            json.dumps({"index": 0, "error": {"message": "nope"}}),
            "",
        ]
        client = MagicMock()
        client.files.download.return_value = "\n".join(lines).encode("utf-8")
        job = SimpleNamespace(dest=SimpleNamespace(inlined_responses=None, file_name="files/out"))
        poll = BatchPoll(state=BatchState.SUCCEEDED, raw_state="JOB_STATE_SUCCEEDED", job=job)

        results = GeminiBatchGateway(client).fetch_results(poll, "file", ["a", "b", "c"])

        client.files.download.assert_called_once_with(file="files/out")
        assert results == [ItemError("nope"), ItemText("B"), ItemMissing()]

    def test_refetches_job_when_poll_has_none(self) -> None:
        client = MagicMock()
        client.batches.get.return_value = SimpleNamespace(
            dest=SimpleNamespace(inlined_responses=[SimpleNamespace(response={"text": "x"}, error=None)])
        )
        poll = BatchPoll(state=BatchState.SUCCEEDED, raw_state="JOB_STATE_SUCCEEDED", job_name="batches/9")

        results = GeminiBatchGateway(client).fetch_results(poll, "inline", ["a"])

        client.batches.get.assert_called_once_with(name="batches/9")
        assert results == [ItemText("x")]


class TestDecoding:
    def test_extract_text_prefers_text_field(self) -> None:
        response = {"text": "direct", "candidates": [{"content": {"parts": [{"text": "ignored"}]}}]}
        assert extract_text(response) == "direct"

    def test_extract_text_joins_candidate_parts(self) -> None:
        response = {"candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}]}
        assert extract_text(response) == "ab"

    def test_extract_text_none(self) -> None:
        assert extract_text(None) is None
        assert extract_text({"candidates": []}) is None

    def test_extract_error_variants(self) -> None:
        assert extract_error("plain") == "plain"
        assert extract_error({"message": "msg"}) == "msg"
        assert extract_error({"details": ["a", "b"]}) == "a; b"
        assert extract_error({"code": 7}) == '{"code": 7}'
        assert extract_error(None) is None

    def test_strip_code_fence(self) -> None:
        assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'

    def test_convert_schema(self) -> None:
        schema = {
            "type": "object",
            "properties": {
                "kind": {"type": "string", "enum": ["LOCAL", "STATE"]},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["kind"],
            "additionalProperties": False,
        }

        assert convert_schema(schema) == {
            "type": "OBJECT",
            "required": ["kind"],
            "properties": {
                "kind": {"type": "STRING", "enum": ["LOCAL", "STATE"]},
                "tags": {"type": "ARRAY", "items": {"type": "STRING"}},
            },
        }


class TestSubmitWithFallback:
    def test_primary_success(self) -> None:
        gateway = MagicMock()
        gateway.submit.return_value = SubmittedBatch(job_name="batches/1", mode="inline")

        outcome = submit_with_fallback(gateway, BatchSettings(), "job", [_request()], ["k"])

        assert outcome is not None
        assert outcome.model == "gemini-2.5-pro"
        assert outcome.fallback_used is False

    def test_no_fallback_when_same_model(self) -> None:
        gateway = MagicMock()
        gateway.submit.side_effect = RuntimeError("down")
        settings = BatchSettings(model="m", fallback_model="m")

        assert submit_with_fallback(gateway, settings, "job", [_request()], ["k"]) is None
        gateway.submit.assert_called_once()


def test_make_client_requires_key() -> None:
    with pytest.raises(ValueError):
        make_client(BatchSettings(gemini_api_key=""))
