from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class MediaSource(str, Enum):
    REMOTE = "remote"
    INLINE = "inline"
    LOCAL = "local"


class MediaReference(BaseModel):
    source: MediaSource
    kind: MediaKind
    value: str


class Scene(BaseModel):
    index: int
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    duration: float
    width: int
    height: int
    fps: int
    # Picture box inside the frame; None fills the whole frame
    content_width: Optional[int] = None
    content_height: Optional[int] = None


class SceneSkip(BaseModel):
    index: int
    reason: str


class AssemblyResult(BaseModel):
    job_id: str
    video_url: str
    video_path: str
    segments: int
    skipped: List[SceneSkip] = Field(default_factory=list)
    duration_seconds: float
    width: int
    height: int
    fps: int
    has_audio: bool = False


class GenerationKind(str, Enum):
    IMAGE = "image"
    VIDEO_DRAFT = "video_draft"
    VIDEO_HIGH = "video_high"


class GenerationJobState(str, Enum):
    SUBMITTED = "submitted"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    UNKNOWN = "unknown"


TERMINAL_STATES = frozenset(
    {GenerationJobState.COMPLETED, GenerationJobState.FAILED, GenerationJobState.TIMED_OUT}
)


class JobResult(BaseModel):
    job_id: str
    kind: GenerationKind
    success: bool
    state: GenerationJobState
    media_url: Optional[str] = None
    media_path: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    finished_at: datetime = Field(default_factory=datetime.utcnow)


class ProgressEstimate(BaseModel):
    job_id: str
    state: GenerationJobState
    progress: int
    error: Optional[str] = None
