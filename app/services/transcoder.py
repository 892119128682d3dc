from __future__ import annotations

import asyncio
import logging
import pathlib
import shutil
from typing import Optional, Sequence

import imageio_ffmpeg


class TranscodeError(Exception):
    """Raised when ffmpeg exits non-zero or produces no output."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def resolve_ffmpeg_binary(configured: str | None = None) -> str:
    if configured:
        return configured
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError:
        return shutil.which("ffmpeg") or "ffmpeg"


def letterbox_filter(
    width: int,
    height: int,
    fps: int,
    content_width: int | None = None,
    content_height: int | None = None,
) -> str:
    """Fit the source into the content box, then pad it centred to the full frame."""
    box_width = content_width or width
    box_height = content_height or height
    return (
        f"scale={box_width}:{box_height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,"
        f"fps={fps}"
    )


def format_seconds(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


class FFmpegTranscoder:
    def __init__(
        self,
        binary: str | None = None,
        video_codec: str = "libx264",
        pixel_format: str = "yuv420p",
        audio_codec: str = "aac",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.binary = resolve_ffmpeg_binary(binary)
        self.video_codec = video_codec
        self.pixel_format = pixel_format
        self.audio_codec = audio_codec
        self.log = logger or logging.getLogger(__name__)

    def segment_command(
        self,
        source: pathlib.Path,
        output: pathlib.Path,
        *,
        is_video: bool,
        duration: float,
        width: int,
        height: int,
        fps: int,
        content_width: int | None = None,
        content_height: int | None = None,
    ) -> list[str]:
        seconds = format_seconds(duration)
        if is_video:
            inputs = ["-i", str(source), "-t", seconds, "-an"]
        else:
            inputs = ["-loop", "1", "-t", seconds, "-i", str(source)]
        return [
            self.binary,
            "-y",
            *inputs,
            "-vf",
            letterbox_filter(width, height, fps, content_width, content_height),
            "-c:v",
            self.video_codec,
            "-pix_fmt",
            self.pixel_format,
            str(output),
        ]

    def concat_command(self, manifest: pathlib.Path, output: pathlib.Path) -> list[str]:
        return [
            self.binary,
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(manifest),
            "-c",
            "copy",
            str(output),
        ]

    def mux_command(self, video: pathlib.Path, audio: pathlib.Path, output: pathlib.Path) -> list[str]:
        return [
            self.binary,
            "-y",
            "-i",
            str(video),
            "-i",
            str(audio),
            "-map",
            "0:v:0",
            "-map",
            "1:a:0",
            "-c:v",
            "copy",
            "-c:a",
            self.audio_codec,
            "-shortest",
            str(output),
        ]

    def trim_audio_command(self, audio: pathlib.Path, duration: float, output: pathlib.Path) -> list[str]:
        return [
            self.binary,
            "-y",
            "-i",
            str(audio),
            "-t",
            format_seconds(duration),
            "-c:a",
            self.audio_codec,
            str(output),
        ]

    def frames_command(self, pattern: pathlib.Path, fps: int, output: pathlib.Path) -> list[str]:
        return [
            self.binary,
            "-y",
            "-framerate",
            str(fps),
            "-i",
            str(pattern),
            "-c:v",
            self.video_codec,
            "-pix_fmt",
            self.pixel_format,
            str(output),
        ]

    async def run(self, command: Sequence[str], output: pathlib.Path) -> pathlib.Path:
        self.log.debug("ffmpeg command", extra={"command": " ".join(command)})
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscodeError(f"ffmpeg could not be started: {exc}") from exc
        _, stderr = await proc.communicate()
        stderr_text = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            tail = stderr_text.strip().splitlines()[-5:]
            raise TranscodeError(
                f"ffmpeg exited with code {proc.returncode}: {' | '.join(tail)}",
                returncode=proc.returncode,
                stderr=stderr_text,
            )
        if not output.is_file() or output.stat().st_size == 0:
            raise TranscodeError(f"ffmpeg produced no output at {output}", returncode=proc.returncode, stderr=stderr_text)
        return output

    async def version(self) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError:
            return None
        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            return None
        first_line = stdout.decode("utf-8", errors="replace").splitlines()[:1]
        return first_line[0] if first_line else "ffmpeg"
