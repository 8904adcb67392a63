import json

import anyio
from fastapi.testclient import TestClient

import server
from tubeline.config import Settings
from tubeline.errors import ContentUnavailable
from tubeline.validation import validate

from conftest import FakeResolver, FakeTranscoder, scratch_entries


client = TestClient(server.app)

WATCH_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def make_client(scratch_root, resolver=None, transcoder=None, **overrides):
    settings = Settings(scratch_dir=scratch_root, resolve_timeout=2.0, stall_timeout=2.0, **overrides)
    app = server.create_app(settings, resolver=resolver or FakeResolver(), transcoder=transcoder or FakeTranscoder())
    return TestClient(app), app.state.services


def test_root_ok():
    resp = client.get("/")
    assert resp.status_code == 200
    data = resp.json()
    assert data.get("status") == "ok"
    assert data["endpoints"]["download"] == "/api/download"


def test_health_includes_versions():
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data.get("status") == "ok"
    assert "yt_dlp" in data
    assert "ffmpeg" in data
    assert "max_concurrent_downloads" in data


def test_dependencies_ok_with_working_collaborators(scratch_root):
    test_client, _ = make_client(scratch_root)
    resp = test_client.get("/api/health/dependencies")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert {check["name"] for check in data["checks"]} == {"yt-dlp", "ffmpeg", "scratch-directory"}


def test_dependencies_degraded_without_ffmpeg(scratch_root):
    class NoFfmpeg(FakeTranscoder):
        def version(self):
            return None

    test_client, _ = make_client(scratch_root, transcoder=NoFfmpeg())
    resp = test_client.get("/api/health/dependencies")
    assert resp.status_code == 503
    assert resp.json()["status"] == "degraded"


def test_video_download_streams_with_headers(scratch_root):
    transcoder = FakeTranscoder(output=b"\x00\x00\x00\x18ftypmp42" + b"v" * 5000)
    test_client, services = make_client(scratch_root, transcoder=transcoder)

    resp = test_client.post("/api/download", json={"url": WATCH_URL, "type": "video", "quality": "1080p"})

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.content == b"\x00\x00\x00\x18ftypmp42" + b"v" * 5000
    disposition = resp.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="Never Gonna Give You Up_1080p_')
    assert disposition.split(";")[1].strip().endswith('.mp4"')
    assert resp.headers["x-video-title"] == "Never%20Gonna%20Give%20You%20Up"
    assert resp.headers["x-video-author"] == "Rick%20Astley"
    assert resp.headers["x-video-duration"] == "212"
    assert resp.headers["x-estimated-size"] == "95000000"

    request = transcoder.requests[0]
    assert request.selection.primary.handle.format_id == "137"
    assert request.selection.audio.handle.format_id == "140"

    job_id = resp.headers["x-job-id"]
    status = test_client.get(f"/api/jobs/{job_id}").json()
    assert status["state"] == "completed"
    assert status["progress"] == 100.0
    assert services.scheduler.in_flight() == 0
    assert scratch_entries(scratch_root) == []


def test_audio_download_via_query_string(scratch_root):
    test_client, _ = make_client(scratch_root)
    resp = test_client.get("/api/download", params={"url": "https://youtu.be/dQw4w9WgXcQ", "type": "audio", "quality": "128k"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "audio/mpeg"
    assert '_128k_' in resp.headers["content-disposition"]


def test_invalid_locator_is_rejected_before_admission(scratch_root):
    resolver = FakeResolver()
    test_client, services = make_client(scratch_root, resolver=resolver)
    resp = test_client.post("/api/download", json={"url": "https://vimeo.com/123", "type": "video", "quality": "720p"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidLocator"
    assert resolver.resolved == []
    assert services.scheduler.snapshot()["admitted"] == 0


def test_invalid_quality_names_field(scratch_root):
    test_client, _ = make_client(scratch_root)
    resp = test_client.post("/api/download", json={"url": WATCH_URL, "type": "audio", "quality": "1080p"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "InvalidParameter"
    assert body["field"] == "quality"


def test_non_object_body_is_invalid(scratch_root):
    test_client, _ = make_client(scratch_root)
    resp = test_client.post("/api/download", json=["not", "an", "object"])
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidParameter"


def test_missing_field_is_reported_by_name(scratch_root):
    test_client, services = make_client(scratch_root)
    resp = test_client.post("/api/download", json={"mediaType": "video", "qualityTier": "720p"})
    assert resp.status_code == 400
    assert resp.json()["field"] == "url"

    resp = test_client.post("/api/download", json={"locator": WATCH_URL, "mediaType": "Audio", "qualityTier": "192K"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "audio/mpeg"
    assert services.scheduler.snapshot()["admitted"] == 1


def test_unavailable_content_returns_404_without_scratch(scratch_root):
    test_client, services = make_client(scratch_root, resolver=FakeResolver(error=ContentUnavailable()))
    resp = test_client.post("/api/download", json={"url": WATCH_URL, "type": "video", "quality": "720p"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"] == "ContentUnavailable"
    assert body["message"]
    assert scratch_entries(scratch_root) == []
    assert services.scheduler.in_flight() == 0


def test_transcoder_failure_returns_structured_error(scratch_root):
    transcoder = FakeTranscoder(output=b"", returncode=1, detail="Conversion failed!")
    test_client, services = make_client(scratch_root, transcoder=transcoder)
    resp = test_client.post("/api/download", json={"url": WATCH_URL, "type": "audio", "quality": "192k"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "TranscodeError", "message": "Conversion failed!"}
    assert services.scheduler.in_flight() == 0
    assert scratch_entries(scratch_root) == []


def test_rate_limited_client_gets_retry_after(scratch_root):
    test_client, _ = make_client(scratch_root, rate_limit_capacity=1, rate_limit_refill_per_minute=6)
    payload = {"url": WATCH_URL, "type": "audio", "quality": "192k"}
    assert test_client.post("/api/download", json=payload).status_code == 200
    resp = test_client.post("/api/download", json=payload)
    assert resp.status_code == 429
    assert resp.json()["error"] == "RateLimited"
    assert resp.headers["retry-after"] == "10"


def test_overloaded_when_all_slots_busy(scratch_root):
    test_client, services = make_client(scratch_root, max_concurrent=1)
    spec = validate({"url": WATCH_URL, "type": "audio", "quality": "192k"})
    busy = services.scheduler.admit(spec, "someone-else")
    resp = test_client.post("/api/download", json={"url": WATCH_URL, "type": "audio", "quality": "192k"})
    assert resp.status_code == 503
    assert resp.json()["error"] == "Overloaded"
    assert "retry-after" in resp.headers
    services.scheduler.complete(busy)


def test_info_returns_metadata_and_qualities(scratch_root):
    test_client, _ = make_client(scratch_root)
    for path, params in (("/api/info", {"url": WATCH_URL}), ("/api/info/dQw4w9WgXcQ", None)):
        resp = test_client.get(path, params=params)
        assert resp.status_code == 200
        data = resp.json()
        assert data["title"] == "Never Gonna Give You Up"
        assert data["author"] == "Rick Astley"
        assert data["durationSeconds"] == 212
        assert data["viewCount"] == 1_000_000
        assert data["availableQualities"] == {"video": ["1080p", "720p"], "audio": ["192k"]}


def test_info_rejects_bad_id(scratch_root):
    test_client, _ = make_client(scratch_root)
    resp = test_client.get("/api/info/tooshort")
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidLocator"


def test_info_batch_reports_each_url(scratch_root):
    test_client, _ = make_client(scratch_root)
    resp = test_client.post("/api/info/batch", json={"urls": [WATCH_URL, "nope"]})
    assert resp.status_code == 200
    data = resp.json()
    assert data["summary"] == {"total": 2, "successful": 1, "failed": 1}
    assert data["successful"][0]["id"] == "dQw4w9WgXcQ"
    assert data["failed"][0]["error"] == "InvalidLocator"


def test_info_batch_limits_size(scratch_root):
    test_client, _ = make_client(scratch_root)
    resp = test_client.post("/api/info/batch", json={"urls": [WATCH_URL] * 11})
    assert resp.status_code == 400
    assert resp.json()["field"] == "urls"

    resp = test_client.post("/api/info/batch", json={"urls": WATCH_URL})
    assert resp.status_code == 400
    assert resp.json()["field"] == "urls"


def test_progress_stream_for_finished_job(scratch_root):
    test_client, _ = make_client(scratch_root)
    resp = test_client.post("/api/download", json={"url": WATCH_URL, "type": "audio", "quality": "192k"})
    job_id = resp.headers["x-job-id"]
    events = test_client.get(f"/api/download/progress/{job_id}")
    assert events.status_code == 200
    assert events.headers["content-type"].startswith("text/event-stream")
    assert '"status": "completed"' in events.text
    assert '"progress": 100' in events.text


def test_unknown_job_is_404(scratch_root):
    test_client, _ = make_client(scratch_root)
    assert test_client.get("/api/jobs/missing").status_code == 404
    assert test_client.get("/api/download/progress/missing").status_code == 404


def test_stats_reports_counters(scratch_root):
    test_client, _ = make_client(scratch_root)
    test_client.post("/api/download", json={"url": WATCH_URL, "type": "audio", "quality": "192k"})
    data = test_client.get("/api/health/stats").json()
    assert data["jobs"]["admitted"] == 1
    assert data["jobs"]["completed"] == 1
    assert data["scratch"]["live"] == 0


def test_dead_socket_before_headers_still_frees_everything(scratch_root):
    transcoder = FakeTranscoder()
    settings = Settings(scratch_dir=scratch_root, resolve_timeout=2.0, stall_timeout=2.0)
    app = server.create_app(settings, resolver=FakeResolver(), transcoder=transcoder)
    services = app.state.services
    body = json.dumps({"url": WATCH_URL, "type": "video", "quality": "1080p"}).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/download",
        "raw_path": b"/api/download",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"content-type", b"application/json"), (b"content-length", str(len(body)).encode())],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    requested = []
    sent = []

    async def receive():
        if not requested:
            requested.append(True)
            return {"type": "http.request", "body": body, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message["type"])
        raise OSError("Connection reset by peer")

    async def call_app():
        try:
            await app(scope, receive, send)
        except Exception:
            pass

    anyio.run(call_app)

    assert "http.response.body" not in sent
    assert services.scheduler.in_flight() == 0
    assert transcoder.sessions[0].terminated
    assert services.scratch.live_count() == 0
    assert scratch_entries(scratch_root) == []
