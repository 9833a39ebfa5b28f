"""HTTP surface tests with FastAPI's TestClient and dependency overrides."""

from collections.abc import Generator
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from ballotbatch.api.deps import get_gateway, get_settings
from ballotbatch.db import get_session
from ballotbatch.main import app
from ballotbatch.models.batch_group import GroupStatus
from ballotbatch.models.batch_job import BatchJob, JobStatus
from ballotbatch.schemas.batch import RunSummary, TriggerResponse
from ballotbatch.services.gemini import GeminiBatchGateway, InferenceUnavailableError
from ballotbatch.services.types import SubmittedBatch


@pytest.fixture()
def client(db, settings, mock_gateway: MagicMock) -> Generator[TestClient, None, None]:
    def _session() -> Generator:
        yield db

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: mock_gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestCronTrigger:
    def test_get_is_a_probe(self, client: TestClient) -> None:
        response = client.get("/cron/gemini-batch")

        assert response.status_code == 200
        assert response.json() == {"ok": True, "message": "Use POST"}

    def test_post_returns_summary(self, client: TestClient) -> None:
        summary = RunSummary(analyze_checked=2, analyze_completed=1, errors=[])
        with patch("ballotbatch.api.cron.run_batch_cycle", return_value=TriggerResponse(ok=True, summary=summary)):
            response = client.post("/cron/gemini-batch")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["summary"]["analyze_checked"] == 2
        assert body["summary"]["errors"] == []

    def test_post_reports_skip(self, client: TestClient, settings) -> None:
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"gemini_enabled": False})

        response = client.post("/cron/gemini-batch")

        assert response.status_code == 200
        assert response.json() == {
            "ok": False,
            "skipped": True,
            "reason": "Gemini disabled or missing API key",
        }


class TestBatchEndpoints:
    def test_submit_returns_202(self, client: TestClient, mock_gateway: MagicMock) -> None:
        mock_gateway.submit.return_value = SubmittedBatch(job_name="batches/a1", mode="inline")

        response = client.post(
            "/batch",
            json={
                "rows": [{"municipality": "Springfield", "state": "IL", "position": "Mayor", "firstName": "Ada"}],
                "uploader_email": "u@example.org",
                "display_name": "Spring",
            },
        )

        assert response.status_code == 202
        body = response.json()
        assert body["group_count"] == 1
        assert body["job"]["status"] == JobStatus.ANALYZE_SUBMITTED
        assert body["job"]["analyze_job_name"] == "batches/a1"

    def test_submit_refused_when_gemini_disabled(
        self, client: TestClient, db, settings, mock_gateway: MagicMock
    ) -> None:
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"gemini_enabled": False})

        response = client.post(
            "/batch",
            json={
                "rows": [{"municipality": "Springfield", "state": "IL", "position": "Mayor", "firstName": "Ada"}],
                "uploader_email": "u@example.org",
            },
        )

        assert response.status_code == 503
        assert response.json() == {
            "error": "inference_unavailable",
            "detail": "Gemini disabled or missing API key",
        }
        assert mock_gateway.submit.call_count == 0
        assert db.query(BatchJob).count() == 0

    def test_submit_rejects_empty_rows(self, client: TestClient) -> None:
        response = client.post("/batch", json={"rows": [], "uploader_email": "u@example.org"})

        assert response.status_code == 422

    def test_status_returns_job_and_ordered_groups(self, client: TestClient, make_job) -> None:
        job = make_job(
            JobStatus.STRUCTURE_SUBMITTED,
            groups=[{"status": GroupStatus.STRUCTURE_RUNNING}, {"status": GroupStatus.ANALYZE_FAILED}],
            structure_job_name="batches/s1",
        )

        response = client.get(f"/batch/{job.id}/status")

        assert response.status_code == 200
        body = response.json()
        assert body["job"]["id"] == job.id
        assert body["job"]["status"] == "STRUCTURE_SUBMITTED"
        assert [g["order"] for g in body["groups"]] == [0, 1]
        assert [g["status"] for g in body["groups"]] == ["STRUCTURE_RUNNING", "ANALYZE_FAILED"]

    def test_status_404_when_missing(self, client: TestClient) -> None:
        response = client.get("/batch/12345/status")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestGetGateway:
    def test_refuses_when_gemini_disabled(self, settings) -> None:
        with patch("ballotbatch.api.deps.make_client") as make_client:
            with pytest.raises(InferenceUnavailableError):
                get_gateway(settings.model_copy(update={"gemini_enabled": False}))

        make_client.assert_not_called()

    def test_builds_gateway_when_available(self, settings) -> None:
        with patch("ballotbatch.api.deps.make_client") as make_client:
            gateway = get_gateway(settings)

        make_client.assert_called_once_with(settings)
        assert isinstance(gateway, GeminiBatchGateway)
