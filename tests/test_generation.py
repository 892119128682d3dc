import asyncio

import httpx
import pytest

from app.clients.comfyui import BackendSubmissionError, BackendUnavailableError
from app.models.api import ImageGenerationRequest, VideoClipRequest
from app.models.domain import GenerationJobState, MediaKind
from app.services.generation import GenerationService, PollBudget, classify
from app.workflows.graph import WorkflowError
from conftest import FakeComfyUI, png_bytes, png_data_uri


def make_service(settings, store, results, comfy, transcoder):
    return GenerationService(settings, store, results, comfy.client(), transcoder)


def image_outputs(filename="ComfyUI_00001_.png"):
    return {"7": {"images": [{"filename": filename, "subfolder": "", "type": "output"}]}}


def test_classify_history_entries():
    assert classify(None) == GenerationJobState.QUEUED
    assert classify({"status": {"completed": True}}) == GenerationJobState.COMPLETED
    assert classify({"status": {"completed": False, "status_str": "error"}}) == GenerationJobState.FAILED
    assert classify({"status": {"completed": False, "status_str": "running"}}) == GenerationJobState.RUNNING
    assert classify({}) == GenerationJobState.RUNNING


@pytest.mark.asyncio
async def test_image_job_lifecycle_delivers_result_once(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    comfy.files["ComfyUI_00001_.png"] = png_bytes()

    submitted = await service.submit_image(ImageGenerationRequest(prompt="a lighthouse at dusk"))
    job_id = submitted.job_id
    assert submitted.state == GenerationJobState.SUBMITTED
    assert "SaveImage" in [node["class_type"] for node in comfy.prompts[job_id].values()]

    before = await service.status(job_id)
    assert before.result is None
    assert before.state == GenerationJobState.UNKNOWN

    comfy.complete(job_id, image_outputs())
    await service.queue.drain()

    delivered = await service.status(job_id)
    assert delivered.state == GenerationJobState.COMPLETED
    assert delivered.result.success is True
    assert delivered.result.media_url.startswith("http://testserver/media/image/")
    assert open(delivered.result.media_path, "rb").read() == png_bytes()

    again = await service.status(job_id)
    assert again.result is None
    assert again.state == GenerationJobState.UNKNOWN


@pytest.mark.asyncio
async def test_backend_error_becomes_failed_result(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    submitted = await service.submit_image(ImageGenerationRequest(prompt="storm"))
    comfy.fail(submitted.job_id, [["execution_error", {"exception_message": "CUDA out of memory"}]])
    await service.queue.drain()

    status = await service.status(submitted.job_id)
    assert status.state == GenerationJobState.FAILED
    assert status.result.success is False
    assert "CUDA out of memory" in status.error


@pytest.mark.asyncio
async def test_poll_budget_exhaustion_times_out(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    for kind in list(service.budgets):
        service.budgets[kind] = PollBudget(interval=0.001, max_attempts=3)
    submitted = await service.submit_image(ImageGenerationRequest(prompt="slow"))
    comfy.start(submitted.job_id)
    await service.queue.drain()

    result = results.take_if_present(submitted.job_id)
    assert result.state == GenerationJobState.TIMED_OUT
    assert result.success is False
    assert "3 polls" in result.error


@pytest.mark.asyncio
async def test_transient_poll_errors_are_retried(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    comfy.files["ComfyUI_00001_.png"] = png_bytes()
    comfy.history_errors = 2
    submitted = await service.submit_image(ImageGenerationRequest(prompt="flaky"))
    comfy.complete(submitted.job_id, image_outputs())
    await service.queue.drain()
    assert results.take_if_present(submitted.job_id).success is True


@pytest.mark.asyncio
async def test_missing_output_file_becomes_failed_result(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    submitted = await service.submit_image(ImageGenerationRequest(prompt="ghost"))
    comfy.complete(submitted.job_id, image_outputs("absent.png"))
    await service.queue.drain()
    result = results.take_if_present(submitted.job_id)
    assert result.state == GenerationJobState.FAILED
    assert result.error


@pytest.mark.asyncio
async def test_submission_without_prompt_id_is_rejected(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    comfy.submit_response = httpx.Response(200, json={"error": "queue full"})
    with pytest.raises(BackendSubmissionError):
        await service.submit_image(ImageGenerationRequest(prompt="anything"))
    assert service.queue.pending() == 0

    comfy.submit_response = httpx.Response(400, json={"error": "invalid prompt"})
    with pytest.raises(BackendSubmissionError, match="400"):
        await service.submit_image(ImageGenerationRequest(prompt="anything"))


@pytest.mark.asyncio
async def test_img2img_stages_reference_image(settings, store, results, comfy, transcoder, tmp_path):
    service = make_service(settings, store, results, comfy, transcoder)
    submitted = await service.submit_image(
        ImageGenerationRequest(prompt="same scene, at night", init_image=png_data_uri())
    )
    prompt = comfy.prompts[submitted.job_id]
    load = [node for node in prompt.values() if node["class_type"] == "LoadImage"][0]
    staged = tmp_path / "comfy_input" / load["inputs"]["image"]
    assert staged.name.startswith("ref_")
    assert staged.is_file()


@pytest.mark.asyncio
async def test_unsupported_reference_image_is_rejected(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    with pytest.raises(WorkflowError, match="Unsupported image URL"):
        await service.submit_image(ImageGenerationRequest(prompt="x", init_image="ftp://host/a.png"))
    with pytest.raises(WorkflowError, match="not a valid image"):
        await service.submit_image(
            ImageGenerationRequest(prompt="x", init_image="data:image/png;base64,bm90LWFuLWltYWdl")
        )
    assert comfy.prompts == {}


@pytest.mark.asyncio
async def test_video_clip_requires_backend_node_family(settings, store, results, transcoder):
    comfy = FakeComfyUI(nodes=("KSampler",))
    service = make_service(settings, store, results, comfy, transcoder)
    with pytest.raises(BackendUnavailableError, match="AnimateDiff"):
        await service.submit_video_clip(VideoClipRequest(prompt="waves", quality="draft"))
    assert comfy.prompts == {}


@pytest.mark.asyncio
async def test_high_quality_clip_requires_reference_image(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    with pytest.raises(WorkflowError, match="reference image"):
        await service.submit_video_clip(VideoClipRequest(prompt="waves", quality="high"))


@pytest.mark.asyncio
async def test_draft_clip_with_vhs_output(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    comfy.files["animatediff_00001.mp4"] = b"mp4-bytes"
    submitted = await service.submit_video_clip(
        VideoClipRequest(prompt="waves", quality="draft", duration=2, shotId="shot-7")
    )
    comfy.complete(
        submitted.job_id,
        {"10": {"gifs": [{"filename": "animatediff_00001.mp4", "subfolder": "", "type": "output"}]}},
    )
    await service.queue.drain()

    result = results.take_if_present(submitted.job_id)
    assert result.success is True
    assert result.media_url.endswith(".mp4")
    assert result.metadata["shot_id"] == "shot-7"
    assert result.metadata["fps"] == 16
    assert transcoder.commands == []


@pytest.mark.asyncio
async def test_draft_clip_falls_back_to_frames(settings, store, results, transcoder):
    comfy = FakeComfyUI(nodes=("ADE_LoadAnimateDiffModel",))
    service = make_service(settings, store, results, comfy, transcoder)
    frames = []
    for index in range(3):
        name = f"animatediff_frames_{index:05d}_.png"
        comfy.files[name] = png_bytes(color=(index * 40, 0, 0))
        frames.append({"filename": name, "subfolder": "", "type": "output"})

    submitted = await service.submit_video_clip(VideoClipRequest(prompt="waves", quality="draft", duration=2))
    classes = [node["class_type"] for node in comfy.prompts[submitted.job_id].values()]
    assert "VHS_VideoCombine" not in classes

    comfy.complete(submitted.job_id, {"10": {"images": frames}})
    await service.queue.drain()

    result = results.take_if_present(submitted.job_id)
    assert result.success is True
    assert result.metadata["source"] == {"frames": 3}
    command = transcoder.commands[-1]
    assert command[command.index("-framerate") + 1] == "16"
    assert not any(path.name.startswith("job_") for path in store.directory(MediaKind.VIDEO).iterdir())


@pytest.mark.asyncio
async def test_progress_estimates(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    comfy.running = ["job-a"]
    comfy.pending = ["job-b", "job-c", "job-d"]

    running = await service.progress("job-a")
    assert (running.state, running.progress) == (GenerationJobState.RUNNING, 50)

    third = await service.progress("job-d")
    assert (third.state, third.progress) == (GenerationJobState.QUEUED, 30)

    comfy.complete("job-e", {})
    done = await service.progress("job-e")
    assert (done.state, done.progress) == (GenerationJobState.COMPLETED, 100)

    comfy.fail("job-f", ["boom"])
    failed = await service.progress("job-f")
    assert (failed.state, failed.progress) == (GenerationJobState.FAILED, 0)
    assert failed.error == "boom"

    unknown = await service.progress("job-z")
    assert (unknown.state, unknown.progress) == (GenerationJobState.UNKNOWN, 10)

    comfy.reachable = False
    offline = await service.progress("job-a")
    assert (offline.state, offline.progress) == (GenerationJobState.FAILED, 0)
    assert offline.error


@pytest.mark.asyncio
async def test_preflight_reports_missing_families(settings, store, results, transcoder):
    comfy = FakeComfyUI(nodes=("ADE_LoadAnimateDiffModel",))
    service = make_service(settings, store, results, comfy, transcoder)
    report = await service.preflight()
    assert report.available is True
    assert report.ok is False
    assert report.has_vhs is False
    assert report.missing_nodes == ["HunyuanVideoWrapper", "VideoHelperSuite"]

    comfy.reachable = False
    offline = await service.preflight()
    assert offline.available is False


@pytest.mark.asyncio
async def test_status_stays_running_until_result_is_collected(settings, store, results, comfy, transcoder):
    service = make_service(settings, store, results, comfy, transcoder)
    comfy.files["ComfyUI_00001_.png"] = png_bytes()
    gate = asyncio.Event()
    collect = service.materialize

    async def held_materialize(active, entry):
        await gate.wait()
        return await collect(active, entry)

    service.materialize = held_materialize
    submitted = await service.submit_image(ImageGenerationRequest(prompt="harbour at dawn"))
    comfy.complete(submitted.job_id, image_outputs())

    pending = await service.status(submitted.job_id)
    assert pending.state == GenerationJobState.RUNNING
    assert pending.result is None
    assert pending.progress == 95

    gate.set()
    await service.queue.drain()
    delivered = await service.status(submitted.job_id)
    assert delivered.state == GenerationJobState.COMPLETED
    assert delivered.result.success is True
