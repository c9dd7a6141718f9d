"""Tests for the HTTP API."""
import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from labrunner.api.app import create_app
from labrunner.core.errors import Throttled
from labrunner.services.job_service import JobService

ADD_PY = "def add(a, b):\n    return a + b\n"


@pytest.fixture
def service(settings) -> JobService:
    return JobService(settings)


@pytest.fixture
def client(settings, service):
    with TestClient(create_app(settings, service)) as c:
        yield c


def body(code=ADD_PY, language="python", tests=None):
    return {
        "code": code,
        "language": language,
        "testCases": tests if tests is not None else [
            {"description": "adds", "assertion": "add(2, 3) == 5"},
        ],
    }


class TestMeta:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["scheduler"]["pool_size"] == 2

    def test_languages(self, client: TestClient) -> None:
        response = client.get("/api/languages")

        assert response.status_code == 200
        ids = {lang["id"] for lang in response.json()}
        assert {"python", "javascript", "typescript", "rust", "swift"} <= ids
        rust = next(lang for lang in response.json() if lang["id"] == "rust")
        assert rust["compiled"] is True
        assert "timeoutSeconds" in rust


class TestExecute:
    def test_passing_request(self, client: TestClient) -> None:
        response = client.post("/api/execute", json=body())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["testResults"] == [{"description": "adds", "passed": True}]
        assert "error" not in data

    def test_compile_error_is_still_200(self, client: TestClient) -> None:
        response = client.post("/api/execute", json=body(code="def (:\n", tests=[
            {"description": "a", "assertion": "True"},
            {"description": "b", "assertion": "True"},
        ]))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error"].startswith("CompileError")
        assert data["classification"] == "CompileError"
        assert [t["passed"] for t in data["testResults"]] == [False, False]

    def test_expected_output_camel_case(self, client: TestClient) -> None:
        response = client.post("/api/execute", json=body(code="print('hi there')", tests=[
            {"description": "greets", "expectedOutput": "hi there"},
        ]))

        assert response.json()["testResults"][0]["passed"] is True

    def test_unknown_language_is_400(self, client: TestClient) -> None:
        response = client.post("/api/execute", json=body(language="cobol", tests=[
            {"description": "a", "assertion": "1"},
        ]))

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error"].startswith("InvalidRequest")
        assert data["testResults"] == [{"description": "a", "passed": False, "error": data["error"]}]

    def test_too_many_tests_is_400(self, client: TestClient, settings) -> None:
        tests = [{"description": f"t{i}", "assertion": "True"} for i in range(settings.max_test_cases + 1)]

        response = client.post("/api/execute", json=body(tests=tests))

        assert response.status_code == 400
        assert len(response.json()["testResults"]) == len(tests)

    def test_malformed_body_is_422_with_results(self, client: TestClient) -> None:
        response = client.post("/api/execute", json={
            "language": "python",
            "testCases": [{"description": "a"}, {"description": "b"}],
        })

        assert response.status_code == 422
        data = response.json()
        assert data["success"] is False
        assert data["error"].startswith("InvalidRequest")
        assert [t["description"] for t in data["testResults"]] == ["a", "b"]

    def test_throttled_is_429(self, settings) -> None:
        class FullService(JobService):
            def submit(self, request):
                raise Throttled("execution capacity exhausted")

        with TestClient(create_app(settings, FullService(settings))) as c:
            response = c.post("/api/execute", json=body())

        assert response.status_code == 429
        data = response.json()
        assert data["error"].startswith("Throttled")
        assert data["testResults"][0]["passed"] is False

    def test_full_scheduler_is_429(self, settings) -> None:
        full = settings.model_copy(update={"pool_size": 1, "queue_size": 0})
        with TestClient(create_app(full, JobService(full))) as c:
            busy = c.post("/api/jobs", json=body(code="while True:\n    pass\n"))
            response = c.post("/api/execute", json=body())
            c.delete(f"/api/jobs/{busy.json()['jobId']}")

        assert busy.status_code == 202
        assert response.status_code == 429
        data = response.json()
        assert data["success"] is False
        assert data["classification"] == "Throttled"
        assert data["testResults"] == [{"description": "adds", "passed": False, "error": data["error"]}]

    def test_submit_runs_off_the_event_loop(self, settings) -> None:
        seen = []

        class RecordingService(JobService):
            def submit(self, request):
                try:
                    asyncio.get_running_loop()
                    seen.append("event loop")
                except RuntimeError:
                    seen.append("worker thread")
                return super().submit(request)

        with TestClient(create_app(settings, RecordingService(settings))) as c:
            response = c.post("/api/execute", json=body())

        assert response.status_code == 200
        assert seen == ["worker thread"]


class TestJobs:
    def test_submit_and_poll(self, client: TestClient) -> None:
        response = client.post("/api/jobs", json=body())

        assert response.status_code == 202
        job_id = response.json()["jobId"]
        assert response.json()["state"] in ("idle", "running")

        deadline = time.monotonic() + 10
        data = {}
        while time.monotonic() < deadline:
            data = client.get(f"/api/jobs/{job_id}").json()
            if data["state"] in ("complete", "error"):
                break
            time.sleep(0.05)

        assert data["state"] == "complete"
        assert data["result"]["testResults"][0]["passed"] is True

    def test_cancel_running_job(self, client: TestClient) -> None:
        job_id = client.post("/api/jobs", json=body(code="while True:\n    pass\n")).json()["jobId"]
        time.sleep(0.3)

        response = client.delete(f"/api/jobs/{job_id}")

        assert response.status_code == 200
        assert response.json() == {"jobId": job_id, "cancelled": True}
        deadline = time.monotonic() + 5
        data = {}
        while time.monotonic() < deadline:
            data = client.get(f"/api/jobs/{job_id}").json()
            if data["state"] == "error":
                break
            time.sleep(0.05)
        assert data["result"]["error"].startswith("Cancelled")

    def test_unknown_job_is_404(self, client: TestClient) -> None:
        assert client.get("/api/jobs/nope").status_code == 404
        assert client.delete("/api/jobs/nope").status_code == 404

    def test_job_record_persisted(self, client: TestClient, service: JobService) -> None:
        result = client.post("/api/execute", json=body())
        assert result.status_code == 200

        # the record is finalized by the worker right after the result is delivered
        deadline = time.monotonic() + 5
        rec = None
        while time.monotonic() < deadline:
            recs = [r for r in _all_records(service) if r.tests_total == 1]
            rec = recs[0] if recs else None
            if rec and rec.finished_at is not None:
                break
            time.sleep(0.05)

        assert rec is not None
        assert rec.status == "complete"
        assert rec.tests_passed == 1
        assert rec.language == "python"


def _all_records(service: JobService):
    from sqlmodel import Session, select

    from labrunner.services.job_store import JobRecord

    with Session(service.store.engine) as s:
        return list(s.exec(select(JobRecord)))
