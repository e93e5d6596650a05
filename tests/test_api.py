"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from learning_kernel.api.app import create_app
from learning_kernel.models.config import LearningConfig
from learning_kernel.policy.engine import PolicyEngine
from learning_kernel.policy.store import PolicyStore

AGENT = "support-bot"
BASE = f"/api/agents/{AGENT}/learning"


@pytest.fixture
def client():
    """Create a test client with fresh components."""
    config = LearningConfig(min_runs_for_session=20, min_runs_per_group=5)
    app = create_app(config=config)
    client = TestClient(app)
    response = client.post("/api/agents", json={
        "slug": AGENT,
        "instructions": "You are a helpful support agent.",
    })
    assert response.status_code == 200
    return client


def _ingest(client, run_id: str, score: float, **extra):
    response = client.post(f"/api/agents/{AGENT}/runs", json={
        "id": run_id, "scores": {"quality": score}, **extra,
    })
    assert response.status_code == 200
    return response.json()


def _seed(client, good: int = 20, poor: int = 10):
    for i in range(good + poor):
        _ingest(client, f"run_{i:03d}", 0.9 if i < good else 0.2)


class TestSessionEndpoints:
    def test_list_empty(self, client):
        response = client.get(BASE)
        assert response.status_code == 200
        assert response.json() == {"success": True, "sessions": []}

    def test_start_without_signals_ends_failed(self, client):
        _seed(client, good=25, poor=0)
        response = client.post(BASE, json={"triggerReason": "weekly review"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "COLLECTING"

        detail = client.get(f"{BASE}/{body['sessionId']}").json()
        assert detail["session"]["status"] == "FAILED"
        assert detail["session"]["metadata"]["failureReason"] == "no signals"
        assert detail["session"]["metadata"]["triggerReason"] == "weekly review"
        assert detail["session"]["signalCount"] == 0
        assert detail["dataset"]["runCount"] == 25
        assert [t["toStatus"] for t in detail["transitions"]] == [
            "COLLECTING", "ANALYZING", "FAILED",
        ]

    def test_second_start_conflicts(self, client):
        first = client.post(BASE)
        assert first.status_code == 200
        second = client.post(BASE)
        assert second.status_code == 409
        assert second.json() == {
            "success": False, "error": "AlreadyActiveSession", "code": "AlreadyActiveSession",
        }

    def test_cancel_is_idempotent(self, client):
        session_id = client.post(BASE).json()["sessionId"]
        url = f"{BASE}/{session_id}"
        response = client.request("DELETE", url, json={"reason": "oops", "cancelledBy": "user_1"})
        assert response.json() == {"success": True, "status": "CANCELLED"}
        again = client.request("DELETE", url)
        assert again.json()["status"] == "CANCELLED"
        detail = client.get(url).json()
        assert detail["session"]["metadata"]["cancelledBy"] == "user_1"

    def test_approve_in_wrong_state(self, client):
        session_id = client.post(BASE).json()["sessionId"]
        response = client.post(f"{BASE}/{session_id}/approve", json={"approvedBy": "user_1"})
        assert response.status_code == 409
        assert response.json()["code"] == "InvalidTransition"

    def test_status_filter(self, client):
        client.post(BASE)
        assert len(client.get(BASE, params={"status": "active"}).json()["sessions"]) == 1
        assert client.get(BASE, params={"status": "terminal"}).json()["sessions"] == []
        bad = client.get(BASE, params={"status": "sleeping"})
        assert bad.status_code == 400
        assert bad.json()["code"] == "ValidationError"

    def test_unknown_session_and_agent(self, client):
        missing = client.get(f"{BASE}/ls_missing")
        assert missing.status_code == 404
        assert missing.json()["code"] == "SessionNotFound"
        unknown = client.get("/api/agents/nobody/learning")
        assert unknown.status_code == 404
        assert unknown.json()["code"] == "AgentNotFound"


class TestExperimentFlow:
    def test_full_loop_through_api(self, client):
        _seed(client)
        session_id = client.post(BASE).json()["sessionId"]
        detail = client.get(f"{BASE}/{session_id}").json()
        assert detail["session"]["status"] == "TESTING"
        assert detail["session"]["proposalCount"] == 1
        assert detail["proposals"][0]["instructionsDiff"]
        assert detail["proposals"][0]["toolChangesJson"] is None

        (experiment,) = client.get(f"{BASE}/experiments").json()["experiments"]
        assert experiment["sessionId"] == session_id
        assert experiment["proposalTitle"].startswith("Add quality guidance")
        assert experiment["trafficSplit"] == {"baseline": 0.9, "candidate": 0.1}

        route = client.get(f"/api/agents/{AGENT}/route/run_live").json()
        assert route["experimentId"] == experiment["id"]

        full = detail["experiments"][0]
        last = None
        for i in range(5):
            _ingest(client, f"cand_{i}", 0.9, versionId=full["candidateVersionId"])
            last = _ingest(client, f"base_{i}", 0.5, versionId=full["baselineVersionId"])
        assert last["evaluationDue"] is True

        detail = client.get(f"{BASE}/{session_id}").json()
        assert detail["session"]["status"] == "AWAITING_APPROVAL"
        assert detail["experiments"][0]["gatingResult"] == "passed"

        approved = client.post(
            f"{BASE}/{session_id}/approve", json={"approvedBy": "user_1", "rationale": "ok"}
        ).json()
        assert approved["status"] == "PROMOTED"
        assert approved["promotedVersionId"] == full["candidateVersionId"]

        assert client.get(f"{BASE}/experiments").json()["experiments"] == []
        completed = client.get(f"{BASE}/experiments", params={"status": "completed"}).json()
        assert len(completed["experiments"]) == 1

        metrics = client.get(f"{BASE}/metrics").json()["metrics"]["summary"]
        assert metrics["promotedSessions"] == 1
        assert metrics["totalExperiments"] == 1

    def test_reject_after_gate(self, client):
        _seed(client)
        session_id = client.post(BASE).json()["sessionId"]
        full = client.get(f"{BASE}/{session_id}").json()["experiments"][0]
        for i in range(5):
            _ingest(client, f"cand_{i}", 0.9, versionId=full["candidateVersionId"])
            _ingest(client, f"base_{i}", 0.5, versionId=full["baselineVersionId"])

        response = client.post(
            f"{BASE}/{session_id}/reject", json={"rejectedBy": "user_2", "rationale": "later"}
        )
        assert response.json()["status"] == "REJECTED"
        approval = client.get(f"{BASE}/{session_id}").json()["approval"]
        assert approval["decision"] == "rejected"
        assert approval["approvedBy"] == "user_2"

    def test_unknown_experiment_filter(self, client):
        response = client.get(f"{BASE}/experiments", params={"status": "paused"})
        assert response.status_code == 400


class TestPolicyEndpoints:
    def test_read_defaults(self, client):
        body = client.get(f"{BASE}/policy").json()
        assert body["policy"]["enabled"] is True
        assert body["effective"]["trafficSplitCandidate"] == 0.1

    def test_update_and_audit(self, client):
        response = client.post(f"{BASE}/policy", json={
            "autoPromotionEnabled": True, "actorId": "admin_1",
        })
        assert response.status_code == 200
        assert response.json()["policy"]["autoPromotionEnabled"] is True

        (entry,) = client.get(f"{BASE}/policy/audit").json()["entries"]
        assert entry["action"] == "LEARNING_POLICY_UPDATED"
        assert entry["actorId"] == "admin_1"

    def test_out_of_range_update(self, client):
        response = client.post(f"{BASE}/policy", json={"trafficSplitCandidate": 1.5})
        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["code"] == "ValidationError"

    def test_empty_update(self, client):
        assert client.post(f"{BASE}/policy", json={"actorId": "admin_1"}).status_code == 400

    def test_pause_blocks_start_until_resumed(self, client):
        paused = client.post(f"{BASE}/pause", json={"paused": True, "reason": "incident"})
        assert paused.json() == {"success": True, "paused": True, "message": "Learning paused"}

        blocked = client.post(BASE)
        assert blocked.status_code == 409
        assert blocked.json()["code"] == "PolicyPaused"

        resumed = client.post(f"{BASE}/pause", json={"paused": False})
        assert resumed.json()["message"] == "Learning resumed"
        assert client.post(BASE).status_code == 200

    def test_pause_until_in_past(self, client):
        response = client.post(f"{BASE}/pause", json={
            "paused": True, "pausedUntil": "2001-01-01T00:00:00Z",
        })
        assert response.status_code == 400


class TestOperationalEndpoints:
    def test_request_validation_uses_envelope(self, client):
        response = client.post("/api/agents", json={"name": "no slug"})
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "ValidationError"

    def test_duplicate_agent_slug(self, client):
        response = client.post("/api/agents", json={"slug": AGENT})
        assert response.status_code == 400

    def test_route_without_experiment(self, client):
        body = client.get(f"/api/agents/{AGENT}/route/run_1").json()
        assert body["variant"] == "baseline"
        assert body["experimentId"] is None

    def test_tick_and_status(self, client):
        tick = client.post("/api/learning/tick").json()
        assert tick["success"] is True
        assert tick["started"] == []
        status = client.get("/api/learning/status").json()
        assert status["status"] == "stopped"
        assert status["activeSessions"] == 0

    def test_unexpected_error_returns_request_id(self):
        class _BrokenPolicyEngine(PolicyEngine):
            def get_policy(self, agent_id, current_time=None):
                raise RuntimeError("policy store offline")

        config = LearningConfig()
        app = create_app(
            config=config,
            policy_engine=_BrokenPolicyEngine(PolicyStore(":memory:"), config),
        )
        client = TestClient(app, raise_server_exceptions=False)
        assert client.post("/api/agents", json={"slug": AGENT}).status_code == 200

        response = client.get(f"{BASE}/policy")
        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "InternalError"
        assert body["error"] == "Internal server error"
        assert len(body["requestId"]) == 36
