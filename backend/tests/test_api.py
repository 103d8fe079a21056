import io
import json
import zipfile

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from converter.api import routes
from converter.conversion.models import BatchState
from converter.download.client import DownloadClient
from converter.main import app

from conftest import make_image_bytes


@pytest.fixture
def client(memory_db):
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _png(name="photo.png", size=(100, 50)):
    return ("files", (name, make_image_bytes(size=size), "image/png"))


def test_health_and_formats(client):
    assert client.get("/api/health").json() == {"status": "ok"}
    formats = client.get("/api/formats").json()
    assert "webp" in formats["output_image"]
    assert "mp4" in formats["output_video"]
    limits = client.get("/api/limits").json()
    assert limits["max_files_per_batch"] > 0


def test_convert_returns_reports_and_session(client):
    resp = client.post(
        "/api/convert",
        params={"image_format": "jpeg", "width": 50, "pattern": "{name}_{index}"},
        files=[_png("a.png"), _png("b.png")],
    )
    assert resp.status_code == 200
    body = resp.json()
    session_id = resp.headers["X-Session-ID"]
    assert body["success_count"] == 2
    assert body["failure_count"] == 0
    assert [r["name"] for r in body["results"]] == ["a_001.jpeg", "b_002.jpeg"]
    assert body["results"][0]["dimensions"] == [50, 25]
    assert body["results"][0]["format"] == "JPEG"

    download = client.get(body["results"][0]["download_url"])
    assert download.status_code == 200
    with Image.open(io.BytesIO(download.content)) as img:
        assert img.format == "JPEG"

    history = client.get("/api/history", headers={"X-Session-ID": session_id}).json()
    assert [run["batch_id"] for run in history["runs"]] == [body["batch_id"]]
    detail = client.get(f"/api/history/{body['batch_id']}").json()
    assert len(detail["outcomes"]) == 2


def test_convert_counts_broken_files(client):
    resp = client.post(
        "/api/convert",
        files=[_png("a.png"), ("files", ("broken.png", b"garbage", "image/png"))],
    )
    body = resp.json()
    assert body["success_count"] == 1
    assert body["failure_count"] == 1
    assert body["level"] == "warning"
    assert body["failures"][0]["filename"] == "broken.png"


def test_invalid_settings_rejected(client):
    resp = client.post("/api/convert", params={"image_format": "tiff"}, files=[_png()])
    assert resp.status_code == 400
    resp = client.post("/api/convert", params={"quality": 2}, files=[_png()])
    assert resp.status_code == 422


def test_no_media_files_rejected(client):
    resp = client.post("/api/convert", files=[("files", ("notes.txt", b"hello", "text/plain"))])
    assert resp.status_code == 400
    assert "no valid image or video files" in resp.json()["detail"]


def test_running_session_gets_conflict(client):
    orchestrator = routes.claim_session_orchestrator("busy-session")
    orchestrator.state = BatchState.RUNNING
    try:
        resp = client.post("/api/convert", headers={"X-Session-ID": "busy-session"}, files=[_png()])
        assert resp.status_code == 409
        resp = client.post("/api/convert-batch", headers={"X-Session-ID": "busy-session"}, files=[_png()])
        assert resp.status_code == 409
    finally:
        orchestrator.state = BatchState.IDLE
        routes.release_session_orchestrator("busy-session", orchestrator)
    assert "busy-session" not in routes._orchestrators


def test_finished_requests_release_their_orchestrators(client):
    for _ in range(5):
        assert client.post("/api/convert", files=[_png()]).status_code == 200
    client.post("/api/convert", headers={"X-Session-ID": "repeat"}, files=[_png()])
    client.post("/api/convert-batch", headers={"X-Session-ID": "repeat"}, files=[_png()])
    client.post("/api/convert", files=[("files", ("notes.txt", b"hello", "text/plain"))])
    assert routes._orchestrators == {}


def test_second_background_batch_in_session_conflicts(client, monkeypatch):
    started = []

    async def pending_batch(batch_id, *args):
        started.append(batch_id)

    monkeypatch.setattr(routes, "_run_batch_and_zip", pending_batch)
    headers = {"X-Session-ID": "queued-session"}
    try:
        first = client.post("/api/convert-batch", headers=headers, files=[_png()])
        second = client.post("/api/convert-batch", headers=headers, files=[_png()])
    finally:
        routes._orchestrators.pop("queued-session", None)
    assert first.status_code == 200
    assert second.status_code == 409
    assert started == [first.json()["batch_id"]]


def test_batch_flow_with_zip(client):
    resp = client.post(
        "/api/convert-batch",
        params={"image_format": "png", "zip_folder_structure": "by_format"},
        files=[_png("a.png"), _png("b.png")],
    )
    assert resp.status_code == 200
    batch_id = resp.json()["batch_id"]

    status = client.get(f"/api/batch/{batch_id}").json()
    assert status["status"] == "completed"
    assert status["progress"] == 100.0
    assert len(status["results"]) == 2
    assert status["zip_filename"] == f"{batch_id}.zip"

    archive = client.get(f"/api/batch/{batch_id}/zip")
    assert archive.status_code == 200
    with zipfile.ZipFile(io.BytesIO(archive.content)) as zf:
        assert sorted(zf.namelist()) == ["png/a.png", "png/b.png"]


def test_unknown_batch_and_file(client):
    assert client.get("/api/batch/nope").status_code == 404
    assert client.get("/api/batch/nope/zip").status_code == 404
    assert client.post("/api/batch/nope/cancel").status_code == 404
    assert client.get("/api/download/missing.webp").status_code == 404


def test_suggest_format(client):
    resp = client.post("/api/suggest-format", files=[_png("only.png")])
    assert resp.json() == {"image": "png", "video": "mp4"}


class _Response:
    def __init__(self, payload):
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _opener(payload):
    return lambda req, timeout=None: _Response(payload)


def test_youtube_info_proxies_download_backend(client):
    payload = {"success": True, "data": {"videoId": "dQw4w9WgXcQ", "title": "Clip", "author": "Someone", "duration": 212}}
    app.dependency_overrides[routes.get_download_client] = lambda: DownloadClient("http://backend", opener=_opener(payload))
    resp = client.get("/api/youtube/info", params={"url": "https://youtu.be/dQw4w9WgXcQ"})
    assert resp.status_code == 200
    assert resp.json()["title"] == "Clip"
    assert resp.json()["duration"] == "3:32"

    assert client.get("/api/youtube/info", params={"url": "https://example.com"}).status_code == 400
