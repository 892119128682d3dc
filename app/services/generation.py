from __future__ import annotations

import asyncio
import logging
import pathlib
import shutil
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4

import aiofiles
import httpx

from app.clients.comfyui import BackendSubmissionError, BackendUnavailableError, ComfyUIClient
from app.config import Settings
from app.events.publisher import JobEventPublisher
from app.models.api import (
    BatchItemFailure,
    ImageBatchResponse,
    ImageGenerationRequest,
    JobStatusResponse,
    JobSubmissionResponse,
    PreflightResponse,
    VideoClipRequest,
)
from app.models.domain import (
    GenerationJobState,
    GenerationKind,
    JobResult,
    MediaKind,
    ProgressEstimate,
    TERMINAL_STATES,
)
from app.queue.queue import BaseQueue, LocalQueue
from app.services.lipsync import LipSyncError, LipSyncRunner
from app.services.reference_images import ReferenceImageStager
from app.services.transcoder import FFmpegTranscoder, TranscodeError
from app.storage.media_store import LocalMediaStore
from app.storage.repository import JobResultStore
from app.workflows.builders import (
    BuiltWorkflow,
    ImageWorkflowParams,
    build_image_workflow,
    build_video_workflow,
    plan_video_params,
)
from app.workflows.graph import WorkflowError

DRAFT_NODE = "ADE_LoadAnimateDiffModel"
HIGH_NODE = "HyVideoModelLoader"
VHS_NODE = "VHS_VideoCombine"
REQUIRED_NODES = {"draft": DRAFT_NODE, "high": HIGH_NODE}
NODE_FAMILIES = {DRAFT_NODE: "AnimateDiff-Evolved", HIGH_NODE: "HunyuanVideoWrapper", VHS_NODE: "VideoHelperSuite"}

DELIVERED_HISTORY = 1024


class BackendExecutionError(Exception):
    """The backend reported an explicit error for a job."""


class PollTimeoutError(Exception):
    """The poll budget ran out before the backend reached a terminal state."""


@dataclass(frozen=True)
class PollBudget:
    interval: float
    max_attempts: int


@dataclass
class ActiveJob:
    job_id: str
    workflow: BuiltWorkflow
    budget: PollBudget
    state: GenerationJobState = GenerationJobState.SUBMITTED
    extras: dict[str, Any] = field(default_factory=dict)
    lip_sync_audio: Optional[pathlib.Path] = None

    @property
    def kind(self) -> GenerationKind:
        return self.workflow.kind


def classify(entry: Optional[dict[str, Any]]) -> GenerationJobState:
    """Map a backend history entry to a job state.

    No entry means the backend has not started (or has not recorded) the job.
    """
    if entry is None:
        return GenerationJobState.QUEUED
    status = entry.get("status") or {}
    if status.get("completed"):
        return GenerationJobState.COMPLETED
    if status.get("status_str") == "error":
        return GenerationJobState.FAILED
    return GenerationJobState.RUNNING


def backend_messages(entry: dict[str, Any]) -> str:
    messages = (entry.get("status") or {}).get("messages") or []
    return "; ".join(str(message) for message in messages) or "backend reported an error"


class GenerationService:
    """Submits generation workflows to the backend and collects their results in detached tasks."""

    def __init__(
        self,
        settings: Settings,
        store: LocalMediaStore,
        results: JobResultStore,
        backend: ComfyUIClient,
        transcoder: FFmpegTranscoder,
        events: Optional[JobEventPublisher] = None,
        queue: Optional[BaseQueue] = None,
        lipsync: Optional[LipSyncRunner] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.results = results
        self.backend = backend
        self.transcoder = transcoder
        self.events = events
        self.log = logger or logging.getLogger(__name__)
        self.queue = queue or LocalQueue(self.process_job, logger=self.log)
        self.stager = ReferenceImageStager(settings.comfyui_input_dir, store, backend, logger=self.log)
        self.lipsync = lipsync or LipSyncRunner(
            settings.lipsync_command, transcoder, timeout=settings.lipsync_timeout, logger=self.log
        )
        self.budgets = {
            GenerationKind.IMAGE: PollBudget(settings.image_poll_interval, settings.image_poll_attempts),
            GenerationKind.VIDEO_DRAFT: PollBudget(
                settings.draft_video_poll_interval, settings.draft_video_poll_attempts
            ),
            GenerationKind.VIDEO_HIGH: PollBudget(
                settings.high_video_poll_interval, settings.high_video_poll_attempts
            ),
        }
        self._active: dict[str, ActiveJob] = {}
        self._delivered: deque[str] = deque(maxlen=DELIVERED_HISTORY)

    async def submit_image(self, payload: ImageGenerationRequest) -> JobSubmissionResponse:
        init_image = None
        if payload.init_image:
            init_image = await self.stager.stage(payload.init_image)
        params = ImageWorkflowParams(
            prompt=payload.prompt,
            negative_prompt=payload.negative_prompt or self.settings.default_image_negative_prompt,
            width=payload.width,
            height=payload.height,
            steps=payload.steps,
            cfg=payload.cfg_scale,
            seed=payload.seed,
            init_image=init_image,
            denoising_strength=payload.denoising_strength,
            checkpoint=self.settings.image_checkpoint,
        )
        return await self.submit(build_image_workflow(params))

    async def submit_video_clip(self, payload: VideoClipRequest) -> JobSubmissionResponse:
        required = REQUIRED_NODES[payload.quality]
        if not await self.backend.has_node(required):
            raise BackendUnavailableError(
                f"{NODE_FAMILIES[required]} is not available on the backend ({required} node missing)"
            )
        use_vhs = await self.backend.has_node(VHS_NODE)
        if not use_vhs:
            self.log.warning("vhs nodes missing, using frames fallback", extra={"quality": payload.quality})

        init_image = None
        if payload.image_url:
            init_image = await self.stager.stage(payload.image_url)

        params = plan_video_params(
            payload.quality,
            payload.prompt,
            payload.negative_prompt or self.settings.default_video_negative_prompt,
            duration=payload.duration,
            width=payload.width,
            height=payload.height,
            fps=payload.fps,
            steps=payload.steps,
            cfg=payload.cfg,
            seed=payload.seed,
            denoise=payload.denoise,
            camera_motion=payload.camera_motion,
            init_image=init_image,
        )
        params.use_vhs = use_vhs
        params.checkpoint = self.settings.draft_video_checkpoint
        params.motion_model = self.settings.draft_motion_model
        workflow = build_video_workflow(payload.quality, params)
        extras = {"shot_id": payload.shot_id} if payload.shot_id else {}
        lip_sync_audio = self._lip_sync_audio(payload.audio_url) if payload.lip_sync else None
        return await self.submit(workflow, extras=extras, lip_sync_audio=lip_sync_audio)

    async def submit_image_batch(self, payloads: list[ImageGenerationRequest]) -> ImageBatchResponse:
        """Submit each image request in order; one rejected item does not stop the rest."""
        if not payloads:
            raise ValueError("Images array is required")
        response = ImageBatchResponse()
        for index, payload in enumerate(payloads):
            try:
                response.jobs.append(await self.submit_image(payload))
            except (WorkflowError, ValueError, BackendSubmissionError) as exc:
                self.log.warning("batch image submission failed", extra={"index": index, "error": str(exc)})
                response.failed.append(BatchItemFailure(index=index, error=str(exc)))
        self.log.info(
            "image batch submitted", extra={"submitted": len(response.jobs), "failed": len(response.failed)}
        )
        return response

    async def submit(
        self,
        workflow: BuiltWorkflow,
        extras: Optional[dict[str, Any]] = None,
        lip_sync_audio: Optional[pathlib.Path] = None,
    ) -> JobSubmissionResponse:
        prompt = workflow.to_prompt()
        job_id = await self.backend.submit(prompt)
        self._active[job_id] = ActiveJob(
            job_id=job_id,
            workflow=workflow,
            budget=self.budgets[workflow.kind],
            extras=extras or {},
            lip_sync_audio=lip_sync_audio,
        )
        self.queue.enqueue(job_id)
        self.log.info("generation job submitted", extra={"job_id": job_id, "kind": workflow.kind.value})
        return JobSubmissionResponse(job_id=job_id, kind=workflow.kind, state=GenerationJobState.SUBMITTED)

    async def process_job(self, job_id: str) -> None:
        """Poll ``job_id`` to a terminal state and record exactly one result for it."""
        active = self._active.get(job_id)
        if active is None:
            self.log.warning("no active job to collect", extra={"job_id": job_id})
            return
        try:
            entry = await self.poll_until_terminal(active)
            result = await self.materialize(active, entry)
        except BackendExecutionError as exc:
            result = self._failure(active, GenerationJobState.FAILED, str(exc))
        except PollTimeoutError as exc:
            result = self._failure(active, GenerationJobState.TIMED_OUT, str(exc))
        except Exception as exc:
            self.log.exception("generation job collection failed", extra={"job_id": job_id})
            result = self._failure(active, GenerationJobState.FAILED, str(exc) or exc.__class__.__name__)
        self.results.put(job_id, result)
        self._active.pop(job_id, None)
        self.log.info(
            "generation job finished",
            extra={"job_id": job_id, "state": result.state.value, "success": result.success},
        )
        if self.events is not None:
            self.events.publish_result(result, active.extras)

    async def poll_until_terminal(self, active: ActiveJob) -> dict[str, Any]:
        budget = active.budget
        for attempt in range(1, budget.max_attempts + 1):
            try:
                entry = await self.backend.history(active.job_id)
            except (httpx.HTTPError, ValueError) as exc:
                self.log.warning(
                    "history poll failed",
                    extra={"job_id": active.job_id, "attempt": attempt, "error": str(exc)},
                )
                entry = None
                state = active.state
            else:
                state = classify(entry)
            if state != active.state:
                self.log.info(
                    "generation job state changed",
                    extra={"job_id": active.job_id, "from_state": active.state.value, "to_state": state.value},
                )
                active.state = state
            if state == GenerationJobState.COMPLETED and entry is not None:
                return entry
            if state == GenerationJobState.FAILED and entry is not None:
                raise BackendExecutionError(backend_messages(entry))
            if attempt < budget.max_attempts:
                await asyncio.sleep(budget.interval)
        active.state = GenerationJobState.TIMED_OUT
        raise PollTimeoutError(
            f"Job {active.job_id} did not finish within {budget.max_attempts} polls "
            f"({budget.max_attempts * budget.interval:.0f}s)"
        )

    async def materialize(self, active: ActiveJob, entry: dict[str, Any]) -> JobResult:
        outputs: dict[str, Any] = entry.get("outputs") or {}
        if active.kind == GenerationKind.IMAGE:
            image = _first_file(outputs, ("images",), prefer=active.workflow.output_stage)
            if image is None:
                raise BackendExecutionError("No image output produced by ComfyUI")
            name, path = await self._download(MediaKind.IMAGE, image)
            return self._success(active, MediaKind.IMAGE, name, path, source=image)

        video = _first_file(outputs, ("gifs", "videos"), prefer=active.workflow.output_stage)
        if video is not None:
            name, path = await self._download(MediaKind.VIDEO, video)
            source: dict[str, Any] = video
        else:
            frames = _all_files(outputs, "images", prefer=active.workflow.frames_stage)
            if not frames:
                raise BackendExecutionError("No video output produced by ComfyUI (VHS missing and no frames saved)")
            name, path = await self._assemble_frames(active, frames)
            source = {"frames": len(frames)}
        if active.lip_sync_audio is None:
            return self._success(active, MediaKind.VIDEO, name, path, source=source)
        name, path, synced = await self._apply_lip_sync(active, name, path)
        return self._success(active, MediaKind.VIDEO, name, path, source=source, lip_synced=synced)

    async def progress(self, job_id: str) -> ProgressEstimate:
        try:
            queue = await self.backend.queue()
            for item in queue.get("queue_running") or []:
                if len(item) > 1 and item[1] == job_id:
                    return ProgressEstimate(job_id=job_id, state=GenerationJobState.RUNNING, progress=50)
            for position, item in enumerate(queue.get("queue_pending") or []):
                if len(item) > 1 and item[1] == job_id:
                    return ProgressEstimate(
                        job_id=job_id, state=GenerationJobState.QUEUED, progress=max(5, 40 - position * 5)
                    )
            entry = await self.backend.history(job_id)
        except (httpx.HTTPError, ValueError) as exc:
            return ProgressEstimate(job_id=job_id, state=GenerationJobState.FAILED, progress=0, error=str(exc))

        state = classify(entry)
        if state == GenerationJobState.COMPLETED:
            return ProgressEstimate(job_id=job_id, state=state, progress=100)
        if state == GenerationJobState.FAILED and entry is not None:
            return ProgressEstimate(job_id=job_id, state=state, progress=0, error=backend_messages(entry))
        return ProgressEstimate(job_id=job_id, state=GenerationJobState.UNKNOWN, progress=10)

    async def status(self, job_id: str) -> JobStatusResponse:
        result = self.results.take_if_present(job_id)
        if result is not None:
            self._delivered.append(job_id)
            return JobStatusResponse(
                job_id=job_id,
                state=result.state,
                progress=100 if result.success else 0,
                result=result,
                error=result.error,
            )
        if job_id in self._delivered:
            return JobStatusResponse(job_id=job_id, state=GenerationJobState.UNKNOWN)
        estimate = await self.progress(job_id)
        if job_id in self._active and estimate.state in TERMINAL_STATES:
            # The backend is done but the result is still being collected
            return JobStatusResponse(
                job_id=job_id,
                state=GenerationJobState.RUNNING,
                progress=95 if estimate.state == GenerationJobState.COMPLETED else estimate.progress,
            )
        return JobStatusResponse(
            job_id=job_id, state=estimate.state, progress=estimate.progress, error=estimate.error
        )

    async def preflight(self) -> PreflightResponse:
        nodes = await self.backend.object_info(force=True)
        if not nodes:
            return PreflightResponse(
                ok=False, available=False, message="ComfyUI is not reachable or returned no node information"
            )
        missing = [NODE_FAMILIES[node] for node in (DRAFT_NODE, HIGH_NODE, VHS_NODE) if node not in nodes]
        has_vhs = VHS_NODE in nodes
        message = None
        if missing:
            message = f"Missing node families: {', '.join(missing)}"
        return PreflightResponse(
            ok=not missing, available=True, has_vhs=has_vhs, missing_nodes=missing, message=message
        )

    async def _download(self, kind: MediaKind, file_info: dict[str, Any]) -> tuple[str, pathlib.Path]:
        filename = file_info["filename"]
        data = await self.backend.view(
            filename, subfolder=file_info.get("subfolder", ""), folder_type=file_info.get("type", "output")
        )
        suffix = pathlib.PurePosixPath(filename).suffix or (".png" if kind == MediaKind.IMAGE else ".mp4")
        return await self.store.save_bytes(kind, data, suffix)

    async def _assemble_frames(
        self, active: ActiveJob, frames: list[dict[str, Any]]
    ) -> tuple[str, pathlib.Path]:
        _, job_dir = self.store.create_job_dir()
        try:
            for index, frame in enumerate(frames):
                data = await self.backend.view(
                    frame["filename"],
                    subfolder=frame.get("subfolder", ""),
                    folder_type=frame.get("type", "output"),
                )
                async with aiofiles.open(job_dir / f"frame_{index:05d}.png", "wb") as f:
                    await f.write(data)
            name = f"{uuid4().hex}.mp4"
            output = self.store.directory(MediaKind.VIDEO) / name
            fps = int(active.workflow.metadata.get("fps") or 16)
            command = self.transcoder.frames_command(job_dir / "frame_%05d.png", fps, output)
            await self.transcoder.run(command, output)
            self.log.info(
                "frames assembled into clip", extra={"job_id": active.job_id, "frames": len(frames), "fps": fps}
            )
            return name, output
        finally:
            await asyncio.to_thread(shutil.rmtree, job_dir, True)

    def _lip_sync_audio(self, audio_url: Optional[str]) -> Optional[pathlib.Path]:
        local = self.store.parse_local_url(audio_url or "")
        if local is None or local[0] != MediaKind.AUDIO:
            self.log.warning(
                "lip-sync needs audio from the local audio store, skipping",
                extra={"audio_url": (audio_url or "")[:200]},
            )
            return None
        try:
            return self.store.resolve(MediaKind.AUDIO, local[1])
        except (ValueError, FileNotFoundError) as exc:
            self.log.warning("lip-sync audio unresolved, skipping", exc_info=exc)
            return None

    async def _apply_lip_sync(
        self, active: ActiveJob, name: str, path: pathlib.Path
    ) -> tuple[str, pathlib.Path, bool]:
        """Replace the clip with a lip-synced render; keep the original when the engine fails."""
        duration = float(active.workflow.metadata.get("duration") or self.settings.default_scene_duration)
        synced_name = f"{uuid4().hex}.mp4"
        synced = self.store.directory(MediaKind.VIDEO) / synced_name
        _, work_dir = self.store.create_job_dir()
        try:
            await self.lipsync.sync(path, active.lip_sync_audio, duration, synced, work_dir)
        except (LipSyncError, TranscodeError) as exc:
            self.log.warning(
                "lip-sync failed, keeping original clip",
                extra={"job_id": active.job_id, "error": str(exc)},
            )
            await asyncio.to_thread(synced.unlink, True)
            return name, path, False
        finally:
            await asyncio.to_thread(shutil.rmtree, work_dir, True)
        await asyncio.to_thread(path.unlink, True)
        return synced_name, synced, True

    def _success(
        self,
        active: ActiveJob,
        kind: MediaKind,
        name: str,
        path: pathlib.Path,
        source: dict[str, Any],
        lip_synced: Optional[bool] = None,
    ) -> JobResult:
        metadata = dict(active.workflow.metadata)
        metadata["source"] = source
        if lip_synced is not None:
            metadata["lip_synced"] = lip_synced
        metadata.update(active.extras)
        return JobResult(
            job_id=active.job_id,
            kind=active.kind,
            success=True,
            state=GenerationJobState.COMPLETED,
            media_url=self.store.public_url(kind, name),
            media_path=str(path),
            metadata=metadata,
        )

    def _failure(self, active: ActiveJob, state: GenerationJobState, error: str) -> JobResult:
        return JobResult(
            job_id=active.job_id,
            kind=active.kind,
            success=False,
            state=state,
            metadata=dict(active.extras),
            error=error,
        )


def _ordered_outputs(outputs: dict[str, Any], prefer: Optional[str]) -> list[dict[str, Any]]:
    ordered = []
    if prefer and isinstance(outputs.get(prefer), dict):
        ordered.append(outputs[prefer])
    ordered.extend(value for key, value in outputs.items() if key != prefer and isinstance(value, dict))
    return ordered


def _first_file(outputs: dict[str, Any], keys: tuple[str, ...], prefer: Optional[str] = None) -> Optional[dict[str, Any]]:
    for node_output in _ordered_outputs(outputs, prefer):
        for key in keys:
            files = node_output.get(key) or []
            if files:
                return files[0]
    return None


def _all_files(outputs: dict[str, Any], key: str, prefer: Optional[str] = None) -> list[dict[str, Any]]:
    for node_output in _ordered_outputs(outputs, prefer):
        files = node_output.get(key) or []
        if files:
            return list(files)
    return []
