import json

import pytest

from conftest import dsl
from leadflow.jobs import run_query_server, worker
from leadflow.models import ProgressEvent


@pytest.fixture
def context(make_context):
    return make_context()


@pytest.fixture
def client(context):
    app = run_query_server.create_app(context)
    app.config.update(TESTING=True)
    return app.test_client()


def _frames(body):
    frames = []
    for chunk in body.strip().split("\n\n"):
        lines = chunk.split("\n")
        event = lines[0].removeprefix("event: ")
        data = json.loads(lines[1].removeprefix("data: "))
        frames.append((event, data))
    return frames


def test_format_sse():
    assert run_query_server.format_sse("ping", {"type": "keep-alive"}) == 'event: ping\ndata: {"type": "keep-alive"}\n\n'


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "ok"
    assert body["worker_port_config"] == 9000
    assert body["places_provider"] == "fallback"


def test_create_search_job(client, context):
    response = client.post("/search_jobs", json={"dsl": dsl(target=5), "metadata": {"user": "u1"}})

    assert response.status_code == 202
    data = response.get_json()["data"]
    assert data["status"] == "queued"
    assert data["stream_url"] == f"/search_jobs/{data['job_id']}/stream"
    queued = context.search_queue.claim()
    assert queued.payload["searchId"] == data["job_id"]
    assert queued.payload["metadata"] == {"user": "u1"}


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"dsl": "dentists in columbia"},
        {"dsl": dsl(), "metadata": ["not", "an", "object"]},
    ],
)
def test_create_search_job_requires_dsl_object(client, body):
    response = client.post("/search_jobs", json=body)
    assert response.status_code == 400
    assert "error" in response.get_json()


def test_create_search_job_reports_validation_details(client, context):
    response = client.post("/search_jobs", json={"dsl": dsl(vertical="bakery")})

    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "invalid dsl"
    assert body["details"][0]["loc"] == ["vertical"]
    assert len(context.search_queue) == 0


def test_get_search_job_and_leads(client, context):
    job_id = client.post("/search_jobs", json={"dsl": dsl(target=3)}).get_json()["data"]["job_id"]
    worker.drain_pipeline(context)

    job = client.get(f"/search_jobs/{job_id}").get_json()["data"]
    assert job["status"] == "completed"
    assert job["total_found"] == 3

    leads = client.get(f"/search_jobs/{job_id}/leads").get_json()["data"]
    assert [lead["rank"] for lead in leads] == [1, 2, 3]
    assert leads[0]["name"] == "dentist Business 3"


def test_unknown_job_returns_404(client):
    assert client.get("/search_jobs/missing").status_code == 404
    assert client.get("/search_jobs/missing/leads").status_code == 404
    assert client.get("/search_jobs/missing/stream").status_code == 404
    assert client.post("/search_jobs/missing/cancel").status_code == 404


def test_cancel_search_job(client, context):
    job_id = client.post("/search_jobs", json={"dsl": dsl(target=3)}).get_json()["data"]["job_id"]

    response = client.post(f"/search_jobs/{job_id}/cancel")
    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "cancelled"

    assert client.post(f"/search_jobs/{job_id}/cancel").status_code == 409

    worker.drain_pipeline(context)
    assert context.store.get_search_job(job_id)["status"] == "cancelled"
    assert context.store.list_lead_rankings(job_id) == []


def test_stream_replays_progress_and_completion(client, context):
    job_id = client.post("/search_jobs", json={"dsl": dsl(target=2)}).get_json()["data"]["job_id"]
    worker.drain_pipeline(context)

    response = client.get(f"/search_jobs/{job_id}/stream")

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    assert response.headers["Cache-Control"] == "no-cache"
    frames = _frames(response.get_data(as_text=True))
    assert [event for event, _ in frames] == [
        "connected",
        "status",
        "progress",
        "progress",
        "lead",
        "progress",
        "lead",
        "completed",
    ]
    assert frames[1][1]["status"] == "completed"
    assert frames[4][1]["lead"]["name"] == "dentist Business 1"
    completed = frames[-1][1]
    assert completed["job_id"] == job_id
    assert completed["summary_stats"]["total_leads"] == 2


def test_stream_reports_failure(context):
    context.store.create_search_job("s1", dsl())
    context.events.publish(
        "s1",
        ProgressEvent(type="job:failed", status="failed", message="Search failed: boom", processed=0, total=0),
    )

    frames = list(run_query_server.stream_events(context, "s1", poll_interval=0, sleep=lambda _: None))

    event, data = _frames("".join(frames))[-1]
    assert event == "error"
    assert data["error"] == "Search failed: boom"


def test_stream_synthesizes_terminal_frame_without_events(context):
    context.store.create_search_job("s1", dsl())
    context.store.cancel_search_job("s1")
    sleeps = []

    frames = _frames("".join(run_query_server.stream_events(context, "s1", poll_interval=0.5, sleep=sleeps.append)))

    assert [event for event, _ in frames] == ["connected", "status", "completed"]
    assert frames[-1][1]["status"] == "cancelled"
    assert sleeps == [0.5]


def test_stream_sends_keepalive_pings(context):
    context.store.create_search_job("s1", dsl())
    ticks = iter([0.0, 20.0, 20.0, 40.0, 40.0])
    stream = run_query_server.stream_events(
        context, "s1", poll_interval=0, ping_interval=15, sleep=lambda _: None, clock=lambda: next(ticks)
    )

    frames = [next(stream) for _ in range(4)]

    assert [frame.split("\n")[0] for frame in frames] == ["event: connected", "event: status", "event: ping", "event: ping"]
