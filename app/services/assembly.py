from __future__ import annotations

import asyncio
import logging
import math
import pathlib
import re
from typing import Any, Optional, Sequence
from urllib.parse import urlparse

import aiofiles

from app.clients.media_fetcher import MediaFetcher, MediaFetchError
from app.config import Settings
from app.models.api import VideoAssemblyRequest
from app.models.domain import AssemblyResult, MediaKind, MediaSource, Scene, SceneSkip
from app.services.transcoder import FFmpegTranscoder, TranscodeError
from app.storage.media_store import LocalMediaStore

_WORD_SPLIT = re.compile(r"[^a-z0-9]+")


class NoValidMediaError(Exception):
    """Raised when not a single scene produced a segment."""

    def __init__(self, skipped: Sequence[SceneSkip]) -> None:
        super().__init__("No valid media found in scenes")
        self.skipped = list(skipped)


def is_error_placeholder(raw: str | None) -> bool:
    """True for non-inline image references whose path has an `error` word, like `/img/error-42.png`."""
    if not raw or raw.strip().lower().startswith("data:"):
        return False
    try:
        path = urlparse(raw.strip()).path
    except ValueError:
        return False
    return "error" in _WORD_SPLIT.split(path.lower())


def coerce_duration(raw: Any, default: float, minimum: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if math.isnan(value) or math.isinf(value) or value <= 0:
        return default
    return max(minimum, value)


def build_scenes(payload: VideoAssemblyRequest, settings: Settings) -> list[Scene]:
    width = payload.width or settings.default_width
    height = payload.height or settings.default_height
    fps = payload.fps or settings.default_fps
    scenes: list[Scene] = []
    for index, item in enumerate(payload.scenes):
        scenes.append(
            Scene(
                index=index,
                image_url=item.image_url,
                video_url=item.video_url,
                duration=coerce_duration(item.duration, settings.default_scene_duration, settings.min_scene_duration),
                width=width,
                height=height,
                fps=fps,
                content_width=min(item.width, width) if item.width and item.width > 0 else None,
                content_height=min(item.height, height) if item.height and item.height > 0 else None,
            )
        )
    return scenes


class SegmentNormalizer:
    def __init__(self, transcoder: FFmpegTranscoder) -> None:
        self.transcoder = transcoder

    async def normalize(
        self,
        media_path: pathlib.Path,
        is_video: bool,
        duration: float,
        width: int,
        height: int,
        fps: int,
        output: pathlib.Path,
        content_size: tuple[int | None, int | None] = (None, None),
    ) -> pathlib.Path:
        command = self.transcoder.segment_command(
            media_path,
            output,
            is_video=is_video,
            duration=duration,
            width=width,
            height=height,
            fps=fps,
            content_width=content_size[0],
            content_height=content_size[1],
        )
        return await self.transcoder.run(command, output)


class Sequencer:
    MANIFEST_NAME = "concat.txt"
    OUTPUT_NAME = "combined.mp4"

    def __init__(self, transcoder: FFmpegTranscoder) -> None:
        self.transcoder = transcoder

    def manifest_text(self, segments: Sequence[pathlib.Path], job_dir: pathlib.Path) -> str:
        lines = []
        for segment in segments:
            relative = segment.resolve().relative_to(job_dir.resolve()).as_posix()
            escaped = relative.replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        return "\n".join(lines) + "\n"

    async def concatenate(self, segments: Sequence[pathlib.Path], job_dir: pathlib.Path) -> pathlib.Path:
        if not segments:
            raise NoValidMediaError([])
        manifest = job_dir / self.MANIFEST_NAME
        async with aiofiles.open(manifest, "w", encoding="utf-8") as f:
            await f.write(self.manifest_text(segments, job_dir))
        output = job_dir / self.OUTPUT_NAME
        return await self.transcoder.run(self.transcoder.concat_command(manifest, output), output)


class AudioMuxer:
    OUTPUT_NAME = "output.mp4"

    def __init__(self, transcoder: FFmpegTranscoder) -> None:
        self.transcoder = transcoder

    async def mux(
        self,
        combined: pathlib.Path,
        audio: pathlib.Path | None,
        job_dir: pathlib.Path,
    ) -> pathlib.Path:
        output = job_dir / self.OUTPUT_NAME
        if audio is None:
            await asyncio.to_thread(combined.replace, output)
            return output
        return await self.transcoder.run(self.transcoder.mux_command(combined, audio, output), output)


class AssemblyService:
    """Turns a storyboard into one video: fetch, normalize, concatenate, mux."""

    def __init__(
        self,
        settings: Settings,
        store: LocalMediaStore,
        fetcher: MediaFetcher,
        transcoder: FFmpegTranscoder,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.normalizer = SegmentNormalizer(transcoder)
        self.sequencer = Sequencer(transcoder)
        self.muxer = AudioMuxer(transcoder)
        self.log = logger or logging.getLogger(__name__)

    async def assemble(self, payload: VideoAssemblyRequest) -> AssemblyResult:
        if not payload.scenes:
            raise ValueError("No scenes provided")
        scenes = build_scenes(payload, self.settings)
        job_id, job_dir = self.store.create_job_dir()
        self.log.info(
            "assembling video",
            extra={"job_id": job_id, "scenes": len(scenes), "title": payload.title, "artist": payload.artist},
        )

        segments: list[pathlib.Path] = []
        durations: list[float] = []
        skipped: list[SceneSkip] = []
        for scene in scenes:
            acquired = await self._acquire(scene, job_dir, skipped)
            if acquired is None:
                continue
            media_path, is_video = acquired
            segment_path = job_dir / f"segment_{scene.index}.mp4"
            try:
                await self.normalizer.normalize(
                    media_path,
                    is_video,
                    scene.duration,
                    scene.width,
                    scene.height,
                    scene.fps,
                    segment_path,
                    content_size=(scene.content_width, scene.content_height),
                )
            except TranscodeError as exc:
                self.log.warning(
                    "scene transcode failed, skipping",
                    extra={"job_id": job_id, "scene_index": scene.index},
                    exc_info=exc,
                )
                skipped.append(SceneSkip(index=scene.index, reason=f"transcode failed: {exc}"))
                continue
            segments.append(segment_path)
            durations.append(scene.duration)

        if not segments:
            raise NoValidMediaError(skipped)

        combined = await self.sequencer.concatenate(segments, job_dir)
        audio_path = self._resolve_audio(payload.audio_url, job_id)
        output = await self.muxer.mux(combined, audio_path, job_dir)

        result = AssemblyResult(
            job_id=job_id,
            video_url=self.store.url_for_path(MediaKind.VIDEO, output),
            video_path=str(output),
            segments=len(segments),
            skipped=skipped,
            duration_seconds=round(sum(durations), 3),
            width=payload.width or self.settings.default_width,
            height=payload.height or self.settings.default_height,
            fps=payload.fps or self.settings.default_fps,
            has_audio=audio_path is not None,
        )
        self.log.info(
            "video assembled",
            extra={"job_id": job_id, "segments": len(segments), "skipped": len(skipped), "has_audio": result.has_audio},
        )
        return result

    async def _acquire(
        self,
        scene: Scene,
        job_dir: pathlib.Path,
        skipped: list[SceneSkip],
    ) -> tuple[pathlib.Path, bool] | None:
        reasons: list[str] = []
        candidates: list[tuple[str | None, MediaKind]] = [(scene.video_url, MediaKind.VIDEO)]
        if is_error_placeholder(scene.image_url):
            reasons.append("image reference is a failed-generation placeholder")
        else:
            candidates.append((scene.image_url, MediaKind.IMAGE))
        for raw, kind in candidates:
            if not raw:
                continue
            reference = self.fetcher.parse_reference(raw, kind)
            if reference is None:
                reasons.append(f"unsupported {kind.value} reference")
                continue
            try:
                path = await self.fetcher.fetch(reference, job_dir, f"scene_{scene.index}")
            except MediaFetchError as exc:
                self.log.warning(
                    "scene media fetch failed",
                    extra={"scene_index": scene.index, "source": reference.source.value, "status": exc.status_code},
                    exc_info=exc,
                )
                reasons.append(f"{kind.value} fetch failed: {exc}")
                continue
            return path, reference.kind == MediaKind.VIDEO
        skipped.append(SceneSkip(index=scene.index, reason="; ".join(reasons) or "no media reference"))
        return None

    def _resolve_audio(self, audio_url: str | None, job_id: str) -> pathlib.Path | None:
        if not audio_url:
            return None
        reference = self.fetcher.parse_reference(audio_url, MediaKind.AUDIO)
        if reference is None or reference.source != MediaSource.LOCAL or reference.kind != MediaKind.AUDIO:
            self.log.warning(
                "audio reference is not in the local audio store, skipping mux",
                extra={"job_id": job_id, "audio_url": audio_url[:200]},
            )
            return None
        try:
            return self.store.resolve(MediaKind.AUDIO, reference.value)
        except (ValueError, FileNotFoundError) as exc:
            self.log.warning("audio reference unresolved", extra={"job_id": job_id}, exc_info=exc)
            return None
