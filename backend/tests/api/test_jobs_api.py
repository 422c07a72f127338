"""Tests for the job control routes."""

import json

import pytest
from factories import OTHER_USER_ID, TEST_USER_ID, make_job, make_plan

from agentloop.queue.schemas import JobStatus, MessageState, message_key

pytestmark = pytest.mark.unit


async def test_submit_requires_user_header(client):
    response = await client.post("/api/jobs", json={"goal": "Say hello"}, headers={"X-User-ID": ""})

    assert response.status_code == 401
    body = response.json()
    assert body["detail"] == "Missing X-User-ID header"
    assert body["debug_id"]


async def test_submit_creates_and_enqueues(client, api_service):
    response = await client.post("/api/jobs", json={"goal": "Say hello", "orchestrate": False})

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["step_index"] == 0
    assert body["total_steps"] is None
    state = await api_service.queue.get_message_state(message_key(body["job_id"], 0))
    assert state == MessageState.WAITING


@pytest.mark.parametrize(
    "payload",
    [{"goal": ""}, {"goal": "x", "tool_choice": "sometimes"}, {"goal": "x", "max_iterations": 0}],
)
async def test_submit_validates_payload(client, payload):
    response = await client.post("/api/jobs", json=payload)
    assert response.status_code == 422


async def test_status_includes_progress_and_plan(client, store):
    job = await store.create_job(make_job(plan=make_plan("Gather", "Write"), status=JobStatus.RUNNING, step_index=1))

    response = await client.get(f"/api/jobs/{job.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["progress"] == 50
    assert body["total_steps"] == 2
    assert body["summary"] == f"Job {job.id}: running (50% complete - step 2/2: Write)"
    assert body["estimated_completion"] is not None
    assert [s["description"] for s in body["plan"]["steps"]] == ["Gather", "Write"]


async def test_other_users_job_is_not_found(client, store):
    job = await store.create_job(make_job(user_id=OTHER_USER_ID))

    for method, path in [
        ("GET", f"/api/jobs/{job.id}"),
        ("POST", f"/api/jobs/{job.id}/pause"),
        ("POST", f"/api/jobs/{job.id}/cancel"),
        ("POST", f"/api/jobs/{job.id}/resume"),
        ("GET", f"/api/jobs/{job.id}/iterations"),
        ("GET", f"/api/jobs/{job.id}/events/stream"),
    ]:
        response = await client.request(method, path)
        assert response.status_code == 404, path
        assert response.json()["detail"] == "Job not found"


async def test_pause_resume_cancel_flow(client, store, api_service):
    job = await store.create_job(make_job(plan=make_plan("a", "b"), status=JobStatus.RUNNING))

    paused = await client.post(f"/api/jobs/{job.id}/pause")
    assert paused.status_code == 200
    assert paused.json()["status"] == "paused"

    again = await client.post(f"/api/jobs/{job.id}/pause")
    assert again.status_code == 409

    resumed = await client.post(f"/api/jobs/{job.id}/resume")
    assert resumed.status_code == 200
    assert resumed.json()["status"] == "running"

    cancelled = await client.post(f"/api/jobs/{job.id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "failed"
    assert cancelled.json()["error"] == "Cancelled by user"
    assert await api_service.queue.get_message_state(message_key(job.id, 0)) is None

    assert (await client.post(f"/api/jobs/{job.id}/resume")).status_code == 409


async def test_iterations_listed_after_a_step(client, api_service):
    submitted = await client.post("/api/jobs", json={"goal": "Say hello", "orchestrate": False})
    job_id = submitted.json()["job_id"]
    await api_service.workers.process_next()

    response = await client.get(f"/api/jobs/{job_id}/iterations")

    assert response.status_code == 200
    [iteration] = response.json()
    assert iteration["iteration_number"] == 1
    assert iteration["total_tokens"] == 150
    assert "message_snapshot" not in iteration


async def test_event_stream_for_finished_job_sends_final_frame(client, store):
    job = await store.create_job(make_job(status=JobStatus.COMPLETED, current_iteration=2))

    response = await client.get(f"/api/jobs/{job.id}/events/stream")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    frames = [f for f in response.text.split("\n\n") if f]
    assert len(frames) == 1
    event = json.loads(frames[0].removeprefix("data: "))
    assert event == {
        "type": "job-complete",
        "job_id": job.id,
        "status": "completed",
        "iteration": 2,
        "error": None,
    }


async def test_engine_not_started_returns_503(client, app):
    del app.state.engine

    response = await client.get("/api/jobs/anything", headers={"X-User-ID": TEST_USER_ID})

    assert response.status_code == 503
    assert response.json()["detail"] == "Engine not started"
