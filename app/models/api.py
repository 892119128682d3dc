from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, validator

from .domain import AssemblyResult, GenerationJobState, GenerationKind, JobResult, SceneSkip


class ScenePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("image_url", "imageUrl"))
    video_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("video_url", "videoUrl"))
    # Left untyped so that garbage durations fall back to the default instead of failing validation.
    duration: Any = None
    width: Optional[int] = None
    height: Optional[int] = None


class VideoAssemblyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scenes: List[ScenePayload] = Field(default_factory=list)
    audio_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("audio_url", "audioUrl"))
    title: Optional[str] = None
    artist: Optional[str] = None
    width: Optional[int] = Field(default=None, ge=16, le=7680)
    height: Optional[int] = Field(default=None, ge=16, le=4320)
    fps: Optional[int] = Field(default=None, ge=1, le=120)


class AssemblyResponse(BaseModel):
    video: AssemblyResult


class AssemblyFailure(BaseModel):
    error: str
    skipped: List[SceneSkip] = Field(default_factory=list)


class ImageGenerationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    negative_prompt: Optional[str] = None
    width: int = Field(default=1024, ge=64, le=4096)
    height: int = Field(default=576, ge=64, le=4096)
    steps: int = Field(default=8, ge=1, le=150)
    cfg_scale: float = Field(default=2.0, ge=0.0, le=30.0)
    seed: Optional[int] = None
    init_image: Optional[str] = Field(default=None, validation_alias=AliasChoices("init_image", "initImage"))
    denoising_strength: float = Field(default=0.45, ge=0.0, le=1.0)

    @validator("prompt")
    def validate_prompt(cls, value: str) -> str:  # noqa: D417
        if not value.strip():
            raise ValueError("prompt is required")
        return value


class VideoClipRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    image_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("image_url", "imageUrl"))
    negative_prompt: Optional[str] = None
    quality: Literal["draft", "high"] = "draft"
    duration: Optional[float] = None
    width: Optional[int] = Field(default=None, ge=64, le=4096)
    height: Optional[int] = Field(default=None, ge=64, le=4096)
    fps: Optional[int] = Field(default=None, ge=1, le=60)
    steps: Optional[int] = Field(default=None, ge=1, le=150)
    cfg: Optional[float] = Field(default=None, ge=0.0, le=30.0)
    seed: int = -1
    denoise: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    camera_motion: Optional[str] = "static"
    shot_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("shot_id", "shotId"))
    lip_sync: bool = Field(default=False, validation_alias=AliasChoices("lip_sync", "lipSync"))
    audio_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("audio_url", "audioUrl"))

    @validator("prompt")
    def validate_prompt(cls, value: str) -> str:  # noqa: D417
        if not value.strip():
            raise ValueError("prompt is required")
        return value


class ImageBatchRequest(BaseModel):
    images: List[ImageGenerationRequest] = Field(default_factory=list)


class JobSubmissionResponse(BaseModel):
    job_id: str
    kind: GenerationKind
    state: GenerationJobState


class BatchItemFailure(BaseModel):
    index: int
    error: str


class ImageBatchResponse(BaseModel):
    jobs: List[JobSubmissionResponse] = Field(default_factory=list)
    failed: List[BatchItemFailure] = Field(default_factory=list)


class JobStatusResponse(BaseModel):
    job_id: str
    state: GenerationJobState
    progress: Optional[int] = None
    result: Optional[JobResult] = None
    error: Optional[str] = None


class BackendHealthResponse(BaseModel):
    available: bool
    queue_running: int = 0
    queue_pending: int = 0
    error: Optional[str] = None


class PreflightResponse(BaseModel):
    ok: bool
    available: bool
    has_vhs: bool = False
    missing_nodes: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    ffmpeg: str
    message: Optional[str] = None
