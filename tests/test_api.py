import json

from fastapi.testclient import TestClient

from run_control.app import create_app
from run_control.schemas import ArtifactInfo
from pipeline_fixtures import IMAGE, SCRIPT, build_pipeline_service


def _client(**kw):
    service = build_pipeline_service(**kw)
    return TestClient(create_app(service)), service


def _sse_events(body):
    events = []
    for block in body.split("\n\n"):
        data = [line[len("data:"):].strip() for line in block.splitlines() if line.startswith("data:")]
        if data:
            events.append(json.loads("\n".join(data)))
    return events


def test_plan_endpoint_returns_layered_plan():
    client, _ = _client()
    with client:
        r = client.post("/generate/plan", json={"blueprint": "demo"})
    assert r.status_code == 200
    body = r.json()
    assert body["layers"] == 3
    assert body["total_jobs"] == 4
    assert [len(l["jobs"]) for l in body["layer_breakdown"]] == [1, 2, 1]
    assert body["has_placeholders"] is True
    assert body["plan_id"].startswith("plan-")


def test_plan_uses_stored_artifacts():
    artifacts = [ArtifactInfo(id=SCRIPT, status="succeeded"), ArtifactInfo(id=IMAGE, status="failed")]
    client, _ = _client(artifacts=artifacts)
    with client:
        r = client.post("/generate/plan", json={"blueprint": "demo"})
    # audio has no stored artifact so it is dirty too
    producers = {j["producer"] for l in r.json()["layer_breakdown"] for j in l["jobs"]}
    assert producers == {"ImageProducer", "AudioProducer", "VideoProducer"}


def test_plan_errors():
    client, _ = _client()
    with client:
        unknown = client.post("/generate/plan", json={"blueprint": "missing"})
        bad_range = client.post("/generate/plan", json={"blueprint": "demo", "re_run_from": 9})
        empty = client.post("/generate/plan", json={"blueprint": ""})
    assert unknown.status_code == 400
    assert "missing" in unknown.json()["detail"]
    assert bad_range.status_code == 400
    assert empty.status_code == 422


def test_execute_and_stream_until_complete():
    client, service = _client()
    with client:
        plan = client.post("/generate/plan", json={"blueprint": "demo"}).json()
        r = client.post("/generate/execute", json={"plan_id": plan["plan_id"], "dry_run": True})
        assert r.status_code == 200
        started = r.json()
        assert started["plan_id"] == plan["plan_id"]
        assert started["stream_url"] == f"/generate/jobs/{started['job_id']}/stream"

        stream = client.get(started["stream_url"])
        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(stream.text)
        assert events[0]["type"] == "status"
        types = [e["type"] for e in events[1:]]
        assert types[0] == "plan-ready"
        assert types[-1] == "execution-complete"
        assert events[-1]["status"] == "succeeded"
        assert types.count("job-complete") == 4

        status = client.get(f"/generate/jobs/{started['job_id']}").json()
        assert status["status"] == "completed"
        assert status["dry_run"] is True
        assert status["summary"]["jobs_succeeded"] == 4

        listing = client.get("/generate/jobs").json()
        assert listing["count"] == 1
        assert listing["jobs"][0]["job_id"] == started["job_id"]

        cancel = client.post(f"/generate/jobs/{started['job_id']}/cancel").json()
        assert cancel == {"job_id": started["job_id"], "cancel_requested": False, "status": "completed"}


def test_execute_with_range_skips_lower_layers():
    client, _ = _client()
    with client:
        plan = client.post("/generate/plan", json={"blueprint": "demo"}).json()
        started = client.post("/generate/execute", json={
            "plan_id": plan["plan_id"], "re_run_from": 1, "up_to_layer": 1,
        }).json()
        events = _sse_events(client.get(started["stream_url"]).text)
    skipped = [e["layer_index"] for e in events if e["type"] == "layer-skipped"]
    assert skipped == [0]
    producers = {e["producer"] for e in events if e["type"] == "job-start"}
    assert producers == {"ImageProducer", "AudioProducer"}


def test_execute_errors():
    client, _ = _client()
    with client:
        missing = client.post("/generate/execute", json={"plan_id": "plan-0-abc"})
        plan = client.post("/generate/plan", json={"blueprint": "demo"}).json()
        bad = client.post("/generate/execute", json={"plan_id": plan["plan_id"], "up_to_layer": 7})
        inverted = client.post("/generate/execute", json={
            "plan_id": plan["plan_id"], "re_run_from": 2, "up_to_layer": 1,
        })
    assert missing.status_code == 404
    assert bad.status_code == 400
    assert inverted.status_code == 400


def test_unknown_job_is_404():
    client, _ = _client()
    with client:
        assert client.get("/generate/jobs/job-x").status_code == 404
        assert client.post("/generate/jobs/job-x/cancel").status_code == 404
        assert client.get("/generate/jobs/job-x/stream").status_code == 404
