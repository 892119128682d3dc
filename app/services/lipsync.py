from __future__ import annotations

import asyncio
import logging
import pathlib
import shlex
from typing import Optional, Sequence

from app.services.transcoder import FFmpegTranscoder

PLACEHOLDERS = ("video", "audio", "output")


class LipSyncError(Exception):
    """Raised when the lip-sync engine fails or leaves no output behind."""


def build_lipsync_command(
    template: str, video: pathlib.Path, audio: pathlib.Path, output: pathlib.Path
) -> list[str]:
    """Split ``template`` like a shell would and fill ``{video}``, ``{audio}`` and ``{output}``.

    Placeholders are substituted per argument, so paths with spaces stay one argument.
    """
    try:
        tokens = shlex.split(template)
    except ValueError as exc:
        raise LipSyncError(f"invalid lip-sync command: {exc}") from exc
    if not tokens:
        raise LipSyncError("lip-sync command is not configured")
    values = {"video": str(video), "audio": str(audio), "output": str(output)}
    command = []
    for token in tokens:
        for key in PLACEHOLDERS:
            token = token.replace("{" + key + "}", values[key])
        command.append(token)
    return command


class LipSyncRunner:
    """Runs an external lip-sync engine (Wav2Lip by default) over a generated clip."""

    def __init__(
        self,
        command_template: str,
        transcoder: FFmpegTranscoder,
        timeout: float = 600.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.command_template = command_template
        self.transcoder = transcoder
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)

    async def sync(
        self,
        video: pathlib.Path,
        audio: pathlib.Path,
        duration: float,
        output: pathlib.Path,
        work_dir: pathlib.Path,
    ) -> pathlib.Path:
        if not video.is_file():
            raise LipSyncError(f"video not found: {video}")
        if not audio.is_file():
            raise LipSyncError(f"audio not found: {audio}")
        # Audio never runs past the clip
        trimmed = work_dir / "lipsync_audio.aac"
        await self.transcoder.run(self.transcoder.trim_audio_command(audio, duration, trimmed), trimmed)
        command = build_lipsync_command(self.command_template, video, trimmed, output)
        await self.run(command, output)
        self.log.info("lip-sync applied", extra={"video": video.name, "output": output.name})
        return output

    async def run(self, command: Sequence[str], output: pathlib.Path) -> pathlib.Path:
        self.log.debug("lip-sync command", extra={"command": " ".join(command)})
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise LipSyncError(f"lip-sync engine could not be started: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise LipSyncError(f"lip-sync engine timed out after {self.timeout:.0f}s") from exc
        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip().splitlines()[-5:]
            raise LipSyncError(f"lip-sync engine exited with code {proc.returncode}: {' | '.join(tail)}")
        if not output.is_file() or output.stat().st_size == 0:
            raise LipSyncError(f"lip-sync engine produced no output at {output}")
        return output
