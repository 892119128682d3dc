from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, status

from app.clients.comfyui import BackendSubmissionError, BackendUnavailableError, ComfyUIClient
from app.clients.media_fetcher import MediaFetcher
from app.config import Settings, get_settings
from app.events.publisher import JobEventPublisher
from app.models.api import (
    AssemblyFailure,
    AssemblyResponse,
    BackendHealthResponse,
    HealthResponse,
    ImageBatchRequest,
    ImageBatchResponse,
    ImageGenerationRequest,
    JobStatusResponse,
    JobSubmissionResponse,
    PreflightResponse,
    VideoAssemblyRequest,
    VideoClipRequest,
)
from app.models.domain import ProgressEstimate
from app.services.assembly import AssemblyService, NoValidMediaError
from app.services.generation import GenerationService
from app.services.transcoder import FFmpegTranscoder, TranscodeError
from app.storage.media_store import LocalMediaStore
from app.storage.repository import JobResultStore
from app.workflows.graph import WorkflowError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

_results = JobResultStore()
_store: LocalMediaStore | None = None
_transcoder: FFmpegTranscoder | None = None
_backend: ComfyUIClient | None = None
_assembly: AssemblyService | None = None
_generation: GenerationService | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    if _generation is not None and _generation.events is not None:
        _generation.events.close()
    if _backend is not None:
        await _backend.aclose()


app = FastAPI(title="storyboard-video-service", lifespan=lifespan)


def get_media_store(settings: Settings = Depends(get_settings)) -> LocalMediaStore:
    global _store
    if _store is None:
        store = LocalMediaStore(settings.media_root, public_base_url=settings.public_base_url)
        store.ensure_directories()
        _store = store
    return _store


def get_transcoder(settings: Settings = Depends(get_settings)) -> FFmpegTranscoder:
    global _transcoder
    if _transcoder is None:
        _transcoder = FFmpegTranscoder(
            binary=settings.ffmpeg_binary,
            video_codec=settings.video_codec,
            pixel_format=settings.pixel_format,
            audio_codec=settings.audio_codec,
        )
    return _transcoder


def get_backend(settings: Settings = Depends(get_settings)) -> ComfyUIClient:
    global _backend
    if _backend is None:
        _backend = ComfyUIClient(
            settings.comfyui_url,
            timeout=settings.comfyui_timeout,
            node_cache_ttl=settings.comfyui_node_cache_ttl,
        )
    return _backend


def get_assembly_service(
    settings: Settings = Depends(get_settings),
    store: LocalMediaStore = Depends(get_media_store),
    transcoder: FFmpegTranscoder = Depends(get_transcoder),
) -> AssemblyService:
    global _assembly
    if _assembly is None:
        fetcher = MediaFetcher(
            store, timeout=settings.fetch_timeout, max_redirects=settings.fetch_max_redirects
        )
        _assembly = AssemblyService(settings, store, fetcher, transcoder)
    return _assembly


def get_generation_service(
    settings: Settings = Depends(get_settings),
    store: LocalMediaStore = Depends(get_media_store),
    transcoder: FFmpegTranscoder = Depends(get_transcoder),
    backend: ComfyUIClient = Depends(get_backend),
) -> GenerationService:
    global _generation
    if _generation is None:
        _generation = GenerationService(
            settings, store, _results, backend, transcoder, events=_build_events(settings)
        )
    return _generation


def _build_events(settings: Settings) -> JobEventPublisher | None:
    if not settings.kafka_enabled:
        return None
    try:
        return JobEventPublisher(settings.kafka_bootstrap_servers, settings.kafka_updates_topic)
    except Exception:
        logger.warning("job event publisher unavailable", exc_info=True)
        return None


@app.post("/videos:assemble", response_model=AssemblyResponse)
async def assemble_video(
    payload: VideoAssemblyRequest,
    service: AssemblyService = Depends(get_assembly_service),
) -> AssemblyResponse:
    try:
        result = await service.assemble(payload)
    except NoValidMediaError as exc:
        failure = AssemblyFailure(error=str(exc), skipped=exc.skipped)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=failure.model_dump()) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except TranscodeError as exc:
        logger.error("video assembly failed", extra={"error": str(exc), "stderr": exc.stderr[-2000:]})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return AssemblyResponse(video=result)


@app.post(
    "/generations/images",
    response_model=JobSubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate_image(
    payload: ImageGenerationRequest,
    service: GenerationService = Depends(get_generation_service),
) -> JobSubmissionResponse:
    try:
        return await service.submit_image(payload)
    except (WorkflowError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BackendSubmissionError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@app.post(
    "/generations/images:batch",
    response_model=ImageBatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate_image_batch(
    payload: ImageBatchRequest,
    service: GenerationService = Depends(get_generation_service),
) -> ImageBatchResponse:
    try:
        return await service.submit_image_batch(payload.images)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@app.post(
    "/generations/video-clips",
    response_model=JobSubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate_video_clip(
    payload: VideoClipRequest,
    service: GenerationService = Depends(get_generation_service),
) -> JobSubmissionResponse:
    try:
        return await service.submit_video_clip(payload)
    except (WorkflowError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BackendUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except BackendSubmissionError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@app.get("/generations/{job_id}", response_model=JobStatusResponse)
async def get_generation(
    job_id: str,
    service: GenerationService = Depends(get_generation_service),
) -> JobStatusResponse:
    return await service.status(job_id)


@app.get("/generations/{job_id}/progress", response_model=ProgressEstimate)
async def get_generation_progress(
    job_id: str,
    service: GenerationService = Depends(get_generation_service),
) -> ProgressEstimate:
    return await service.progress(job_id)


@app.get("/backend/health", response_model=BackendHealthResponse)
async def backend_health(backend: ComfyUIClient = Depends(get_backend)) -> BackendHealthResponse:
    return BackendHealthResponse(**await backend.health())


@app.get("/backend/preflight", response_model=PreflightResponse)
async def backend_preflight(
    service: GenerationService = Depends(get_generation_service),
) -> PreflightResponse:
    return await service.preflight()


@app.get("/health", response_model=HealthResponse)
async def health(
    settings: Settings = Depends(get_settings),
    transcoder: FFmpegTranscoder = Depends(get_transcoder),
) -> HealthResponse:
    version = await transcoder.version()
    if version is None:
        return HealthResponse(status="degraded", ffmpeg="unavailable", message=f"{transcoder.binary} did not run")
    return HealthResponse(status="ok", ffmpeg=version, message=settings.app_name)
