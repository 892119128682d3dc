from __future__ import annotations

import asyncio
import io
import logging
import pathlib
from typing import Optional
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

import aiofiles
from PIL import Image, UnidentifiedImageError

from app.clients.comfyui import ComfyUIClient
from app.clients.media_fetcher import MediaFetchError, decode_data_uri
from app.models.domain import MediaKind
from app.storage.media_store import LocalMediaStore
from app.workflows.graph import WorkflowError


def normalize_image(data: bytes) -> tuple[bytes, str]:
    """Verify ``data`` is a decodable image and re-encode it for the backend's LoadImage node."""
    try:
        with Image.open(io.BytesIO(data)) as probe:
            probe.verify()
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            fmt = (image.format or "PNG").upper()
            if fmt in ("JPEG", "JPG"):
                buffer = io.BytesIO()
                image.convert("RGB").save(buffer, format="JPEG", quality=95)
                return buffer.getvalue(), ".jpg"
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA")
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            return buffer.getvalue(), ".png"
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise WorkflowError(f"reference image is not a valid image: {exc}") from exc


class ReferenceImageStager:
    """Places reference images where the backend's LoadImage node can read them.

    The backend input directory is a volume shared with the generation
    backend, so the node only needs the bare filename.
    """

    def __init__(
        self,
        input_dir: str | pathlib.Path,
        store: LocalMediaStore,
        backend: ComfyUIClient,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.input_dir = pathlib.Path(input_dir)
        self.store = store
        self.backend = backend
        self.log = logger or logging.getLogger(__name__)

    async def stage(self, reference: str) -> str:
        data = await self._load(reference.strip())
        normalized, suffix = await asyncio.to_thread(normalize_image, data)
        self.input_dir.mkdir(parents=True, exist_ok=True)
        name = f"ref_{uuid4().hex}{suffix}"
        async with aiofiles.open(self.input_dir / name, "wb") as f:
            await f.write(normalized)
        self.log.info("reference image staged", extra={"image": name, "size": len(normalized)})
        return name

    async def _load(self, reference: str) -> bytes:
        if reference.startswith("data:image"):
            try:
                _, data = decode_data_uri(reference)
            except MediaFetchError as exc:
                raise WorkflowError(f"invalid reference image data URI: {exc}") from exc
            return data
        local = self.store.parse_local_url(reference)
        if local is not None:
            kind, name = local
            if kind != MediaKind.IMAGE:
                raise WorkflowError("reference must point to an image")
            try:
                path = self.store.resolve(kind, name)
            except (ValueError, FileNotFoundError) as exc:
                raise WorkflowError(str(exc)) from exc
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        if reference.startswith(self.backend.base_url + "/view"):
            query = parse_qs(urlparse(reference).query)
            filename = (query.get("filename") or [""])[0]
            if not filename:
                raise WorkflowError("invalid ComfyUI view URL: missing filename parameter")
            return await self.backend.view(
                filename,
                subfolder=(query.get("subfolder") or [""])[0],
                folder_type=(query.get("type") or ["output"])[0],
            )
        raise WorkflowError(
            "Unsupported image URL format: expected a data URI, a local media URL or a ComfyUI view URL"
        )
