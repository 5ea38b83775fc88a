"""
Tests for the HTTP API.
"""

import json
import time

import pytest
from fastapi.testclient import TestClient

from planloom.core.api import create_app
from planloom.core.execution import TaskResult

PLAN_BODY = {
    "title": "Service",
    "phases": [
        {
            "title": "Build",
            "tasks": [
                {"key": "t1", "title": "T1"},
                {"key": "t2", "title": "T2", "dependsOn": ["t1"]},
            ],
        }
    ],
}

RENAME_REPLY = (
    "Renaming the phase.\n<UPDATES>\n"
    '[{"action": "update_phase", "phaseOrder": 1, "updates": {"title": "Core"}, "label": "Rename"}]\n'
    "</UPDATES>"
)


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as test_client:
        yield test_client


@pytest.fixture
def plan(client):
    response = client.post("/api/plans", json=PLAN_BODY)
    assert response.status_code == 201
    return response.json()


def sse_events(text):
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


def wait_settled(client, plan_id, attempts=500):
    for _ in range(attempts):
        state = client.get(f"/api/plans/{plan_id}/state").json()
        if not state["active"]:
            return client.get(f"/api/plans/{plan_id}").json()
        time.sleep(0.01)
    raise AssertionError(f"plan {plan_id} did not settle")


# ==============================================================================
# Plans
# ==============================================================================


class TestPlans:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_create_nested_plan(self, plan):
        assert plan["status"] == "draft"
        assert plan["total_tasks"] == 2
        t1, t2 = plan["phases"][0]["tasks"]
        assert t2["depends_on"] == [t1["id"]]
        assert plan["iterations"][0]["iteration_type"] == "initial"

    def test_list_with_filter(self, client, plan):
        assert [p["id"] for p in client.get("/api/plans").json()] == [plan["id"]]
        assert client.get("/api/plans", params={"status": "ready"}).json() == []

    def test_get_missing(self, client):
        response = client.get("/api/plans/plan-missing")
        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "NOT_FOUND"
        assert body["message"] == "Plan not found: plan-missing"

    def test_invalid_body(self, client):
        response = client.post("/api/plans", json={"title": ""})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_unknown_dependency(self, client):
        body = {"title": "Bad", "phases": [{"title": "P", "tasks": [{"title": "A", "dependsOn": ["Z"]}]}]}
        response = client.post("/api/plans", json=body)
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_patch(self, client, plan):
        response = client.patch(f"/api/plans/{plan['id']}", json={"description": "v2"})
        assert response.status_code == 200
        assert response.json()["description"] == "v2"

    def test_delete(self, client, plan):
        assert client.delete(f"/api/plans/{plan['id']}").json() == {"success": True}
        assert client.get(f"/api/plans/{plan['id']}").status_code == 404

    def test_add_phase(self, client, plan):
        response = client.post(
            f"/api/plans/{plan['id']}/phases",
            json={"title": "Docs", "executionMode": "manual", "tasks": [{"title": "Guide"}]},
        )
        assert response.status_code == 201
        phase = response.json()
        assert phase["order"] == 1
        assert phase["execution_mode"] == "manual"
        assert [t["title"] for t in phase["tasks"]] == ["Guide"]


# ==============================================================================
# Lifecycle
# ==============================================================================


class TestLifecycle:
    def test_run_to_completion(self, client, plan):
        assert client.post(f"/api/plans/{plan['id']}/ready").json()["status"] == "ready"
        started = client.post(f"/api/plans/{plan['id']}/start")
        assert started.status_code == 200
        assert started.json()["status"] == "running"

        detail = wait_settled(client, plan["id"])
        assert detail["status"] == "completed"
        assert detail["completed_tasks"] == 2
        state = client.get(f"/api/plans/{plan['id']}/state").json()
        assert state == {"planId": plan["id"], "state": "completed", "active": False}

    def test_start_draft_conflict(self, client, plan):
        response = client.post(f"/api/plans/{plan['id']}/start")
        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_TRANSITION"

    def test_event_stream(self, client, plan):
        client.post(f"/api/plans/{plan['id']}/ready")
        client.post(f"/api/plans/{plan['id']}/start")

        response = client.get(
            f"/api/plans/{plan['id']}/events", params={"replay": True, "until_settled": True}
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response.text)
        assert events[0]["type"] == "plan_started"
        assert events[-1]["type"] == "plan_completed"
        assert [e["sequence"] for e in events] == list(range(1, len(events) + 1))
        assert {e["planId"] for e in events} == {plan["id"]}

    def test_events_for_missing_plan(self, client):
        assert client.get("/api/plans/plan-missing/events").status_code == 404

    def test_failure_and_retry(self, client, runner, plan):
        runner.script("T1", TaskResult.failed("boom"))
        client.post(f"/api/plans/{plan['id']}/ready")
        client.post(f"/api/plans/{plan['id']}/start")

        detail = wait_settled(client, plan["id"])
        assert detail["status"] == "paused"
        assert detail["status_reason"] == "task_failed"
        t1 = detail["phases"][0]["tasks"][0]
        assert t1["status"] == "failed"
        assert t1["last_error"] == "boom"

        retried = client.post(f"/api/tasks/{t1['id']}/retry")
        assert retried.status_code == 200
        assert retried.json()["attempts"] == 0
        assert wait_settled(client, plan["id"])["status"] == "completed"

    def test_pause_resume_cancel_paused(self, client, plan):
        client.post(f"/api/plans/{plan['id']}/ready")
        assert client.post(f"/api/plans/{plan['id']}/pause").status_code == 409
        assert client.post(f"/api/plans/{plan['id']}/resume").status_code == 409
        assert client.post(f"/api/plans/{plan['id']}/cancel").status_code == 409

    def test_manual_trigger(self, client, plan):
        phase = client.post(
            f"/api/plans/{plan['id']}/phases",
            json={"title": "Deploy", "executionMode": "manual", "tasks": [{"title": "Ship"}]},
        ).json()
        client.post(f"/api/plans/{plan['id']}/ready")
        client.post(f"/api/plans/{plan['id']}/start")

        detail = wait_settled(client, plan["id"])
        assert detail["status_reason"] == "manual_approval_required"

        ship = phase["tasks"][0]
        assert client.post(f"/api/tasks/{ship['id']}/trigger").status_code == 200
        assert wait_settled(client, plan["id"])["status"] == "completed"


# ==============================================================================
# Phases and tasks
# ==============================================================================


class TestPhasesAndTasks:
    def test_phase_edit_and_task_create(self, client, plan):
        phase_id = plan["phases"][0]["id"]
        patched = client.patch(f"/api/phases/{phase_id}", json={"executionMode": "parallel"})
        assert patched.json()["execution_mode"] == "parallel"

        created = client.post(f"/api/phases/{phase_id}/tasks", json={"title": "T3"})
        assert created.status_code == 201
        assert created.json()["order"] == 2
        assert client.get(f"/api/plans/{plan['id']}").json()["total_tasks"] == 3

    def test_task_crud(self, client, plan):
        t1, t2 = plan["phases"][0]["tasks"]
        assert client.get(f"/api/tasks/{t2['id']}").json()["title"] == "T2"

        patched = client.patch(f"/api/tasks/{t2['id']}", json={"dependsOn": []})
        assert patched.json()["depends_on"] == []

        assert client.delete(f"/api/tasks/{t1['id']}").json() == {"success": True}
        assert client.get(f"/api/tasks/{t1['id']}").status_code == 404

    def test_foreign_dependency(self, client, plan):
        t1 = plan["phases"][0]["tasks"][0]
        response = client.patch(f"/api/tasks/{t1['id']}", json={"dependsOn": ["task-elsewhere"]})
        assert response.status_code == 400

    def test_delete_phase(self, client, plan):
        phase_id = plan["phases"][0]["id"]
        assert client.delete(f"/api/phases/{phase_id}").json() == {"success": True}
        assert client.get(f"/api/plans/{plan['id']}").json()["phases"] == []


# ==============================================================================
# Refinement
# ==============================================================================


class TestRefine:
    def test_stream_review_apply(self, client, fake_generator, plan):
        fake_generator.queue(RENAME_REPLY)
        response = client.post(f"/api/plans/{plan['id']}/refine", json={"message": "rename it"})
        assert response.status_code == 200

        events = sse_events(response.text)
        assert [e["type"] for e in events][-2:] == ["proposals", "done"]
        (change,) = events[-2]["changes"]
        assert change["before"]["title"] == "Build"

        state = client.get(f"/api/plans/{plan['id']}/refine").json()
        assert [p["id"] for p in state["proposals"]] == [change["id"]]

        accepted = client.put(
            f"/api/plans/{plan['id']}/refine/proposals/{change['id']}", json={"status": "accepted"}
        )
        assert accepted.json()["status"] == "accepted"

        report = client.post(f"/api/plans/{plan['id']}/refine/apply").json()
        assert report["applied"] == 1
        assert report["results"][0]["applied"] is True
        detail = client.get(f"/api/plans/{plan['id']}").json()
        assert detail["phases"][0]["title"] == "Core"
        assert detail["iterations"][-1]["iteration_type"] == "refine"

    def test_auto_apply(self, client, fake_generator, plan):
        fake_generator.queue(RENAME_REPLY)
        response = client.post(
            f"/api/plans/{plan['id']}/refine", json={"message": "rename", "autoApply": True}
        )
        applied = next(e for e in sse_events(response.text) if e["type"] == "applied")
        assert applied["count"] == 1
        assert client.get(f"/api/plans/{plan['id']}").json()["phases"][0]["title"] == "Core"

    def test_conversation_history(self, client, fake_generator, plan):
        fake_generator.queue("Sure.")
        client.post(
            f"/api/plans/{plan['id']}/refine",
            json={
                "message": "and docs?",
                "conversationHistory": [{"role": "user", "content": "add tests"}],
            },
        )
        assert fake_generator.requests[0].history[0].content == "add tests"

    def test_apply_selected_ids(self, client, fake_generator, plan):
        fake_generator.queue(RENAME_REPLY)
        client.post(f"/api/plans/{plan['id']}/refine", json={"message": "rename"})
        report = client.post(
            f"/api/plans/{plan['id']}/refine/apply", json={"proposalIds": [0]}
        ).json()
        assert report["applied"] == 1

    def test_unknown_proposal(self, client, plan):
        response = client.put(
            f"/api/plans/{plan['id']}/refine/proposals/7", json={"status": "accepted"}
        )
        assert response.status_code == 404

    def test_empty_message(self, client, plan):
        response = client.post(f"/api/plans/{plan['id']}/refine", json={"message": ""})
        assert response.status_code == 422

    def test_missing_plan(self, client):
        response = client.post("/api/plans/plan-missing/refine", json={"message": "x"})
        assert response.status_code == 404

    def test_clear_session(self, client, fake_generator, plan):
        fake_generator.queue(RENAME_REPLY)
        client.post(f"/api/plans/{plan['id']}/refine", json={"message": "rename"})
        assert client.delete(f"/api/plans/{plan['id']}/refine").json() == {"success": True}
        assert client.get(f"/api/plans/{plan['id']}/refine").json()["proposals"] == []
