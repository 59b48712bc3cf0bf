"""
Integration tests for the FastAPI application.

Tests the API endpoints using TestClient (no real Ollama needed).

Covers:
  - GET    /health
  - POST   /analyses            (scripted oracle)
  - GET    /analyses/{id}/progress  (SSE frames)
  - GET    /analyses, /analyses/{id}, /analyses/{id}/report.md
  - DELETE /analyses/{id}
  - Error cases (unknown framework, no documents, unknown analysis)
"""

import orjson
import pytest


@pytest.fixture
def client(engine, session_factory, store, seeded, scripted_oracle):
    """TestClient bound to a pipeline over the temporary database."""
    from fastapi.testclient import TestClient
    from evidence_analyzer.main import app
    from evidence_analyzer.orchestrator import build_pipeline

    app.state.engine = engine
    app.state.pipeline = build_pipeline(session_factory, scripted_oracle, store=store)
    with TestClient(app) as c:
        yield c


def _frames(body):
    return [orjson.loads(chunk[len("data: "):]) for chunk in body.split("\n\n") if chunk.startswith("data: ")]


def _run_to_completion(client, framework_id, **extra):
    r = client.post("/analyses", json={"frameworkId": framework_id, **extra})
    assert r.status_code == 202
    job_id = r.json()["jobId"]
    stream = client.get(f"/analyses/{job_id}/progress")
    return job_id, stream


# ═══════════════════════════════════════════
#  GET /health
# ═══════════════════════════════════════════
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "ok"
        assert data["ollama_model"] == "deepseek-r1"


# ═══════════════════════════════════════════
#  POST /analyses + progress stream
# ═══════════════════════════════════════════
class TestCreateAnalysis:
    def test_accepted_and_streamed_to_completion(self, client, seeded):
        job_id, stream = _run_to_completion(client, seeded["framework_id"])

        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        assert stream.headers["cache-control"] == "no-cache"
        frames = _frames(stream.text)
        assert frames[-1]["stage"] == "completed"
        assert frames[-1]["progress"] == 100
        progress = [f["progress"] for f in frames]
        assert progress == sorted(progress)

        r = client.get(f"/analyses/{job_id}")
        assert r.status_code == 200
        body = r.json()
        assert body["analysis"]["status"] == "completed"
        assert len(body["evidence_mappings"]) == 3
        assert body["gap_summary"]["missing_controls"][0]["control_id"] == "A.5.24"

    def test_completed_stream_replays_terminal_state(self, client, seeded):
        job_id, _ = _run_to_completion(client, seeded["framework_id"])
        frames = _frames(client.get(f"/analyses/{job_id}/progress").text)
        assert len(frames) == 1
        assert frames[0]["stage"] == "completed"

    def test_unknown_framework_404(self, client):
        r = client.post("/analyses", json={"frameworkId": 999})
        assert r.status_code == 404
        assert "not found" in r.json()["detail"]

    def test_no_documents_400(self, client, seeded):
        r = client.post("/analyses?organization_id=2", json={"frameworkId": seeded["framework_id"]})
        assert r.status_code == 400

    def test_unknown_control_ids_400(self, client, seeded):
        r = client.post("/analyses", json={"frameworkId": seeded["framework_id"], "controlIds": ["Z.1"]})
        assert r.status_code == 400

    def test_invalid_body_422(self, client):
        r = client.post("/analyses", json={"documentIds": [1]})
        assert r.status_code == 422


# ═══════════════════════════════════════════
#  Reads / delete
# ═══════════════════════════════════════════
class TestReadEndpoints:
    def test_list_analyses(self, client, seeded):
        job_id, _ = _run_to_completion(client, seeded["framework_id"])
        r = client.get("/analyses")
        assert r.status_code == 200
        assert [a["id"] for a in r.json()] == [job_id]
        assert client.get("/analyses?organization_id=2").json() == []

    def test_markdown_report(self, client, seeded):
        job_id, _ = _run_to_completion(client, seeded["framework_id"])
        r = client.get(f"/analyses/{job_id}/report.md")
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/markdown")
        assert "### A.5.15 Access control" in r.text

    def test_unknown_analysis_404(self, client):
        assert client.get("/analyses/12345").status_code == 404
        assert client.get("/analyses/12345/report.md").status_code == 404
        assert client.delete("/analyses/12345").status_code == 404

    def test_delete(self, client, seeded):
        job_id, _ = _run_to_completion(client, seeded["framework_id"])
        r = client.delete(f"/analyses/{job_id}")
        assert r.status_code == 200
        assert r.json() == {"success": True}
        assert client.get(f"/analyses/{job_id}").status_code == 404
