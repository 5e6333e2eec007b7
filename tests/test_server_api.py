#!/usr/bin/env python3
"""Test the FastAPI server endpoints against an orchestrator built on fakes.

To run these tests, install with:
    pip install -e ".[test,server]"
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

try:
    from fastapi.testclient import TestClient
except ImportError:
    pytest.skip(
        "FastAPI TestClient requires httpx. Install with: pip install -e '.[test,server]'",
        allow_module_level=True,
    )

from fakes import FakeGit, FakeRuntime, FakeSourceHost

from issue_resolver.config import ResolverConfig
from issue_resolver.orchestrator import SessionOrchestrator
from issue_resolver.server.api import create_app

ISSUE_URL = "https://github.com/test-owner/test-repo/issues/123"


@pytest.fixture
def orchestrator(tmp_path: Path, runtime: FakeRuntime, git: FakeGit, source_host: FakeSourceHost) -> SessionOrchestrator:
    config = ResolverConfig(github_token="tok", development_path=str(tmp_path / "workspace"))
    return SessionOrchestrator(runtime, git, config=config, source_host=source_host)


@pytest.fixture
def client(orchestrator: SessionOrchestrator) -> TestClient:
    return TestClient(create_app(orchestrator=orchestrator))


def _start(client: TestClient) -> dict:
    response = client.post("/api/sessions", json={"issue_url": ISSUE_URL})
    assert response.status_code == 201
    return response.json()


def test_root_endpoint(client: TestClient) -> None:
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_start_session_parks_on_approval(client: TestClient) -> None:
    data = _start(client)
    assert data["status"] == "awaiting_approval"
    assert data["issue_key"] == "test-owner/test-repo#123"
    assert data["pending_request"]["options"] == ["Approve", "Modify", "Reject"]
    assert "credentials" not in data


def test_duplicate_session_conflicts(client: TestClient) -> None:
    _start(client)
    response = client.post("/api/sessions", json={"issue_url": ISSUE_URL})
    assert response.status_code == 409


def test_invalid_issue_url(client: TestClient) -> None:
    response = client.post("/api/sessions", json={"issue_url": "https://example.com/nope"})
    assert response.status_code == 400


def test_unknown_session(client: TestClient) -> None:
    assert client.get("/api/sessions/session-missing").status_code == 404
    assert client.get("/api/sessions/session-missing/updates").status_code == 404
    response = client.post("/api/sessions/session-missing/responses", json={"request_id": "x", "value": "Approve"})
    assert response.status_code == 404


def test_approve_flow(client: TestClient, source_host: FakeSourceHost) -> None:
    data = _start(client)
    request_id = data["pending_request"]["id"]

    response = client.post(
        f"/api/sessions/{data['id']}/responses",
        json={"request_id": request_id, "value": "Approve"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["result"]["success"] is True
    assert body["result"]["change_request_url"] == "https://github.com/test-owner/test-repo/pull/1"
    assert body["teardown_count"] == 1

    stale = client.post(
        f"/api/sessions/{data['id']}/responses",
        json={"request_id": request_id, "value": "Approve"},
    )
    assert stale.status_code == 409


def test_stale_request_id(client: TestClient) -> None:
    data = _start(client)
    response = client.post(
        f"/api/sessions/{data['id']}/responses",
        json={"request_id": "req-unknown", "value": "Approve"},
    )
    assert response.status_code == 409
    assert client.get(f"/api/sessions/{data['id']}").json()["status"] == "awaiting_approval"


def test_updates_since(client: TestClient) -> None:
    data = _start(client)
    all_updates = client.get(f"/api/sessions/{data['id']}/updates").json()
    assert all_updates["status"] == "awaiting_approval"
    seqs = [update["seq"] for update in all_updates["updates"]]
    assert seqs == list(range(1, len(seqs) + 1))
    assert all_updates["updates"][-1]["kind"] == "awaiting_user_input"

    tail = client.get(f"/api/sessions/{data['id']}/updates", params={"since": seqs[-1]}).json()
    assert tail["updates"] == []


def test_cancel_parked_session(client: TestClient, runtime: FakeRuntime) -> None:
    data = _start(client)
    response = client.post(f"/api/sessions/{data['id']}/cancel")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "failed"
    assert body["result"]["success"] is False
    assert body["pending_request"] is None
    assert runtime.created == []

    restarted = client.post("/api/sessions", json={"issue_url": ISSUE_URL})
    assert restarted.status_code == 201


def test_list_sessions(client: TestClient) -> None:
    first = _start(client)
    listing = client.get("/api/sessions").json()
    assert [item["id"] for item in listing] == [first["id"]]
