from __future__ import annotations

import logging
import pathlib
from typing import Optional
from urllib.parse import urlparse
from uuid import uuid4

import aiofiles

from app.models.domain import MediaKind

_KIND_DIRECTORIES = {
    MediaKind.IMAGE: "images",
    MediaKind.VIDEO: "videos",
    MediaKind.AUDIO: "audio",
}


class LocalMediaStore:
    """Filesystem media store partitioned by media kind.

    Stored files are addressed by a store-relative name (``clip.mp4`` or
    ``job_<id>/output.mp4``) and exposed as ``{public_base_url}/media/{kind}/{name}``.
    """

    def __init__(self, root: str | pathlib.Path, public_base_url: str = "", logger: Optional[logging.Logger] = None) -> None:
        self.root = pathlib.Path(root)
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.log = logger or logging.getLogger(__name__)

    def ensure_directories(self) -> None:
        for kind in MediaKind:
            self.directory(kind).mkdir(parents=True, exist_ok=True)

    def directory(self, kind: MediaKind) -> pathlib.Path:
        return self.root / _KIND_DIRECTORIES[kind]

    def create_job_dir(self) -> tuple[str, pathlib.Path]:
        job_id = uuid4().hex
        job_dir = self.directory(MediaKind.VIDEO) / f"job_{job_id}"
        job_dir.mkdir(parents=True, exist_ok=True)
        return job_id, job_dir

    def public_url(self, kind: MediaKind, name: str) -> str:
        return f"{self.public_base_url}/media/{kind.value}/{name}"

    def relative_name(self, kind: MediaKind, path: pathlib.Path) -> str:
        return path.resolve().relative_to(self.directory(kind).resolve()).as_posix()

    def url_for_path(self, kind: MediaKind, path: pathlib.Path) -> str:
        return self.public_url(kind, self.relative_name(kind, path))

    def parse_local_url(self, url: str) -> tuple[MediaKind, str] | None:
        """Return ``(kind, name)`` when ``url`` points into this store, else ``None``."""
        candidate = (url or "").strip()
        if not candidate:
            return None
        if candidate.lower().startswith(("http://", "https://")):
            if not self.public_base_url or not candidate.startswith(self.public_base_url + "/"):
                return None
            path = urlparse(candidate).path
        elif candidate.startswith("/"):
            path = candidate
        else:
            return None
        parts = [part for part in path.split("/") if part]
        if len(parts) < 3 or parts[0] != "media":
            return None
        try:
            kind = MediaKind(parts[1])
        except ValueError:
            return None
        return kind, "/".join(parts[2:])

    def resolve(self, kind: MediaKind, name: str) -> pathlib.Path:
        parts = pathlib.PurePosixPath(name).parts
        if not parts or any(part in ("", ".", "..") or "\\" in part for part in parts):
            raise ValueError(f"invalid media name: {name!r}")
        base = self.directory(kind).resolve()
        path = (base / pathlib.Path(*parts)).resolve()
        if base not in path.parents:
            raise ValueError(f"media name escapes the {kind.value} store: {name!r}")
        if not path.is_file():
            raise FileNotFoundError(f"{kind.value} not found in local store: {name}")
        return path

    async def save_bytes(self, kind: MediaKind, data: bytes, suffix: str) -> tuple[str, pathlib.Path]:
        directory = self.directory(kind)
        directory.mkdir(parents=True, exist_ok=True)
        name = f"{uuid4().hex}{suffix}"
        path = directory / name
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        self.log.info(
            "media stored",
            extra={"kind": kind.value, "media_name": name, "size": len(data)},
        )
        return name, path
