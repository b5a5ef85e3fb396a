"""HTTP surface tests using FastAPI's TestClient with real stores in a temp directory."""

import importlib
import sys

import pytest
from conftest import make_option, make_question, make_section, make_summary
from fastapi.testclient import TestClient

TENANT = "tenant-1"
URL = "https://example.com/"


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setenv("LEADFLOW_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("CHROMA_PATH", str(tmp_path / "chroma"))
    sys.modules.pop("leadflow.app", None)
    module = importlib.import_module("leadflow.app")
    yield module
    sys.modules.pop("leadflow.app", None)


@pytest.fixture
def client(app_module):
    return TestClient(app_module.app)


class TestChatEndpoint:
    """Tests for POST /api/chat."""

    def test_unknown_page_is_unstructured(self, client):
        response = client.post(
            "/api/chat", json={"session_id": "s1", "message": "hi", "page_url": URL, "tenant_id": TENANT}
        )

        assert response.status_code == 200
        assert response.json()["structured"] is False

    def test_first_message_returns_lead_question(self, client, app_module):
        question = make_question("How do you book calls?", [make_option("Spreadsheets"), make_option("A tool")])
        app_module.summary_store.insert(TENANT, URL, make_summary(make_section("Hero", lead=[question])))

        response = client.post(
            "/api/chat", json={"session_id": "s1", "message": "hi", "page_url": URL, "tenant_id": TENANT}
        )

        body = response.json()
        assert body["structured"] is True
        assert body["message"] == "How do you book calls?"
        assert body["options"] == ["Spreadsheets", "A tool"]
        assert body["next_step"] == "lead_question"

        session = client.get("/api/sessions/s1").json()
        assert session["step"] == "lead_question"


class TestReadEndpoints:
    """Tests for session and summary lookups."""

    def test_unknown_session_is_404(self, client):
        assert client.get("/api/sessions/missing").status_code == 404

    def test_summaries_by_tenant(self, client, app_module):
        app_module.summary_store.insert(TENANT, URL, make_summary(make_section("Hero")))

        records = client.get("/api/summaries", params={"tenant_id": TENANT}).json()

        assert [r["url"] for r in records] == [URL]
        assert records[0]["generation"] == 1

    def test_diagnostics_without_summaries(self, client):
        response = client.post("/api/diagnostics", json={"tenant_id": "nobody"})

        assert response.json() == {"tenant_id": "nobody", "summaries_updated": 0}
