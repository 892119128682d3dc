import time

import httpx
import pytest
from fastapi.testclient import TestClient

from app.clients.media_fetcher import MediaFetcher
from app.main import (
    app,
    get_assembly_service,
    get_backend,
    get_generation_service,
    get_transcoder,
)
from app.services.assembly import AssemblyService
from app.services.generation import GenerationService
from conftest import png_bytes, png_data_uri


@pytest.fixture
def client(settings, store, results, comfy, transcoder):
    backend = comfy.client()
    fetcher = MediaFetcher(store, transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    assembly = AssemblyService(settings, store, fetcher, transcoder)
    generation = GenerationService(settings, store, results, backend, transcoder)
    app.dependency_overrides[get_assembly_service] = lambda: assembly
    app.dependency_overrides[get_generation_service] = lambda: generation
    app.dependency_overrides[get_backend] = lambda: backend
    app.dependency_overrides[get_transcoder] = lambda: transcoder
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_assemble_video(client):
    payload = {
        "scenes": [
            {"imageUrl": png_data_uri(), "duration": 2},
            {"imageUrl": "https://cdn.test/gone.png"},
        ],
        "title": "Demo",
    }
    resp = client.post("/videos:assemble", json=payload)
    assert resp.status_code == 200
    video = resp.json()["video"]
    assert video["segments"] == 1
    assert video["skipped"][0]["index"] == 1
    assert video["video_url"].endswith("/output.mp4")


def test_assemble_without_valid_media(client):
    resp = client.post("/videos:assemble", json={"scenes": [{"imageUrl": "https://cdn.test/gone.png"}]})
    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["error"] == "No valid media found in scenes"
    assert detail["skipped"][0]["index"] == 0


def test_assemble_without_scenes(client):
    resp = client.post("/videos:assemble", json={"scenes": []})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "No scenes provided"


def test_image_generation_flow(client, comfy):
    comfy.files["ComfyUI_00001_.png"] = png_bytes()
    resp = client.post("/generations/images", json={"prompt": "a red fox in snow", "seed": 3})
    assert resp.status_code == 202
    job_id = resp.json()["job_id"]
    assert resp.json()["kind"] == "image"

    progress = client.get(f"/generations/{job_id}/progress")
    assert progress.status_code == 200
    assert progress.json()["state"] in ("unknown", "queued", "running")

    comfy.complete(job_id, {"7": {"images": [{"filename": "ComfyUI_00001_.png", "subfolder": "", "type": "output"}]}})

    result = None
    for _ in range(100):
        status_resp = client.get(f"/generations/{job_id}")
        assert status_resp.status_code == 200
        result = status_resp.json()["result"]
        if result is not None:
            break
        time.sleep(0.02)
    assert result is not None
    assert result["success"] is True
    assert result["media_url"].startswith("http://testserver/media/image/")

    after = client.get(f"/generations/{job_id}").json()
    assert after["state"] == "unknown"
    assert after["result"] is None


def test_image_generation_validation(client):
    assert client.post("/generations/images", json={"prompt": "   "}).status_code == 422
    resp = client.post("/generations/images", json={"prompt": "x", "initImage": "ftp://nowhere/a.png"})
    assert resp.status_code == 400


def test_backend_rejection_maps_to_bad_gateway(client, comfy):
    comfy.submit_response = httpx.Response(500, text="boom")
    resp = client.post("/generations/images", json={"prompt": "anything"})
    assert resp.status_code == 502


def test_video_clip_submission(client, comfy):
    resp = client.post("/generations/video-clips", json={"prompt": "surf", "quality": "draft", "duration": 2})
    assert resp.status_code == 202
    assert resp.json()["kind"] == "video_draft"
    comfy.fail(resp.json()["job_id"], ["interrupted"])

    assert client.post("/generations/video-clips", json={"prompt": "surf", "quality": "ultra"}).status_code == 422
    assert client.post("/generations/video-clips", json={"prompt": "surf", "quality": "high"}).status_code == 400


def test_video_clip_without_backend_nodes(client, comfy):
    comfy.nodes.discard("HyVideoModelLoader")
    resp = client.post(
        "/generations/video-clips",
        json={"prompt": "surf", "quality": "high", "imageUrl": png_data_uri()},
    )
    assert resp.status_code == 503
    assert "HunyuanVideoWrapper" in resp.json()["detail"]


def test_backend_health_and_preflight(client, comfy):
    comfy.running = ["a"]
    comfy.pending = ["b", "c"]
    health = client.get("/backend/health").json()
    assert health == {"available": True, "queue_running": 1, "queue_pending": 2, "error": None}

    preflight = client.get("/backend/preflight").json()
    assert preflight["ok"] is True
    assert preflight["has_vhs"] is True

    comfy.reachable = False
    assert client.get("/backend/health").json()["available"] is False


def test_service_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["ffmpeg"].startswith("ffmpeg version")


def test_image_batch_submits_in_order(client, comfy):
    resp = client.post(
        "/generations/images:batch",
        json={
            "images": [
                {"prompt": "shot one"},
                {"prompt": "shot two", "initImage": "ftp://nowhere/a.png"},
                {"prompt": "shot three"},
            ]
        },
    )
    assert resp.status_code == 202
    body = resp.json()
    assert [job["kind"] for job in body["jobs"]] == ["image", "image"]
    assert body["failed"][0]["index"] == 1
    assert "Unsupported image URL" in body["failed"][0]["error"]
    prompts = [comfy.prompts[job["job_id"]] for job in body["jobs"]]
    texts = [
        [node["inputs"]["text"] for node in prompt.values() if node["class_type"] == "CLIPTextEncode"][0]
        for prompt in prompts
    ]
    assert texts == ["shot one", "shot three"]
    for job in body["jobs"]:
        comfy.fail(job["job_id"], ["cancelled"])


def test_image_batch_requires_images(client):
    resp = client.post("/generations/images:batch", json={"images": []})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Images array is required"
