import base64
import io
import json
import pathlib

import httpx
import pytest
from PIL import Image

from app.clients.comfyui import ComfyUIClient
from app.config import Settings
from app.services.transcoder import FFmpegTranscoder, TranscodeError
from app.storage.media_store import LocalMediaStore
from app.storage.repository import JobResultStore

COMFY_URL = "http://comfy.test"
PUBLIC_URL = "http://testserver"
ALL_NODES = ("ADE_LoadAnimateDiffModel", "HyVideoModelLoader", "VHS_VideoCombine", "KSampler")


def png_bytes(color=(200, 40, 40), size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_uri() -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes()).decode("ascii")


class FakeTranscoder(FFmpegTranscoder):
    """Records ffmpeg commands and writes a placeholder file instead of running ffmpeg."""

    def __init__(self, fail_outputs=()):
        super().__init__(binary="ffmpeg")
        self.commands = []
        self.fail_outputs = set(fail_outputs)

    async def run(self, command, output):
        self.commands.append(list(command))
        if output.name in self.fail_outputs:
            raise TranscodeError("ffmpeg exited with code 1: invalid data", returncode=1, stderr="invalid data")
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"fake-mp4 " + output.name.encode())
        return output

    async def version(self):
        return "ffmpeg version 6.1-test"


class FakeComfyUI:
    """In-memory ComfyUI served through httpx.MockTransport."""

    def __init__(self, nodes=ALL_NODES):
        self.nodes = set(nodes)
        self.prompts = {}
        self.history = {}
        self.running = []
        self.pending = []
        self.files = {}
        self.history_errors = 0
        self.submit_response = None
        self.reachable = True
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.reachable:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if request.method == "POST" and path == "/prompt":
            if self.submit_response is not None:
                return self.submit_response
            self._counter += 1
            job_id = f"prompt-{self._counter}"
            self.prompts[job_id] = json.loads(request.content)["prompt"]
            return httpx.Response(200, json={"prompt_id": job_id, "number": self._counter})
        if path == "/queue":
            return httpx.Response(
                200,
                json={
                    "queue_running": [[0, job_id, {}, {}, []] for job_id in self.running],
                    "queue_pending": [[i + 1, job_id, {}, {}, []] for i, job_id in enumerate(self.pending)],
                },
            )
        if path.startswith("/history/"):
            if self.history_errors:
                self.history_errors -= 1
                return httpx.Response(500, text="internal error")
            job_id = path.rsplit("/", 1)[-1]
            entry = self.history.get(job_id)
            return httpx.Response(200, json={job_id: entry} if entry else {})
        if path == "/view":
            data = self.files.get(request.url.params.get("filename"))
            if data is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, content=data)
        if path == "/object_info":
            return httpx.Response(200, json={name: {} for name in self.nodes})
        return httpx.Response(404)

    def complete(self, job_id, outputs):
        self.history[job_id] = {
            "status": {"completed": True, "status_str": "success", "messages": []},
            "outputs": outputs,
        }

    def fail(self, job_id, messages):
        self.history[job_id] = {
            "status": {"completed": False, "status_str": "error", "messages": messages},
            "outputs": {},
        }

    def start(self, job_id):
        self.history[job_id] = {"status": {"completed": False, "status_str": "running", "messages": []}, "outputs": {}}

    def client(self) -> ComfyUIClient:
        return ComfyUIClient(COMFY_URL, timeout=5.0, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> Settings:
    return Settings(
        media_root=str(tmp_path / "media"),
        public_base_url=PUBLIC_URL,
        comfyui_url=COMFY_URL,
        comfyui_input_dir=str(tmp_path / "comfy_input"),
        image_poll_interval=0.01,
        image_poll_attempts=200,
        draft_video_poll_interval=0.01,
        draft_video_poll_attempts=200,
        high_video_poll_interval=0.01,
        high_video_poll_attempts=200,
    )


@pytest.fixture
def store(settings: Settings) -> LocalMediaStore:
    media_store = LocalMediaStore(settings.media_root, public_base_url=settings.public_base_url)
    media_store.ensure_directories()
    return media_store


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def comfy() -> FakeComfyUI:
    return FakeComfyUI()


@pytest.fixture
def results() -> JobResultStore:
    return JobResultStore()
