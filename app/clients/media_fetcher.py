from __future__ import annotations

import base64
import binascii
import logging
import pathlib
import re
from typing import Optional
from urllib.parse import urljoin, urlparse

import aiofiles
import httpx

from app.models.domain import MediaKind, MediaReference, MediaSource
from app.storage.media_store import LocalMediaStore

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[^;,]*)*),(?P<data>.*)$", re.DOTALL)
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
MAX_BASENAME = 100

_DEFAULT_BASENAMES = {
    MediaKind.IMAGE: "image.png",
    MediaKind.VIDEO: "clip.mp4",
    MediaKind.AUDIO: "audio.mp3",
}


class MediaFetchError(Exception):
    """Raised when a media reference cannot be turned into a local file."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RedirectLimitExceeded(MediaFetchError):
    """Raised when a remote URL keeps redirecting past the redirect budget."""


def sanitize_filename(raw: str, default: str) -> str:
    name = raw.split("?")[0].split("#")[0]
    name = pathlib.PurePosixPath(name).name
    name = _UNSAFE_CHARS.sub("_", name)
    if not name.strip("._"):
        return default
    if len(name) > MAX_BASENAME:
        suffix = pathlib.PurePosixPath(name).suffix[:16]
        name = name[: MAX_BASENAME - len(suffix)] + suffix
    return name


def basename_from_url(url: str, default: str) -> str:
    try:
        path = urlparse(url).path
    except ValueError:
        return default
    return sanitize_filename(path, default)


def extension_for_mime(mime: str | None, kind: MediaKind) -> str:
    if not mime or "/" not in mime:
        return pathlib.PurePosixPath(_DEFAULT_BASENAMES[kind]).suffix
    subtype = mime.split("/", 1)[1].lower().split("+")[0]
    if subtype == "jpeg":
        subtype = "jpg"
    if subtype == "quicktime":
        subtype = "mov"
    if subtype == "mpeg" and kind == MediaKind.AUDIO:
        subtype = "mp3"
    return "." + _UNSAFE_CHARS.sub("", subtype)


def decode_data_uri(value: str) -> tuple[str | None, bytes]:
    match = _DATA_URI.match(value.strip())
    if not match:
        raise MediaFetchError("malformed data URI")
    params = match.group("params") or ""
    if ";base64" not in params.lower():
        raise MediaFetchError("only base64 data URIs are supported")
    try:
        data = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise MediaFetchError("invalid base64 payload") from exc
    if not data:
        raise MediaFetchError("empty data URI payload")
    return match.group("mime"), data


class MediaFetcher:
    """Resolves scene media references (remote URL, data URI, local store name) to local files."""

    def __init__(
        self,
        store: LocalMediaStore,
        timeout: float = 20.0,
        max_redirects: int = 5,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._transport = transport
        self.log = logger or logging.getLogger(__name__)

    def parse_reference(self, raw: str | None, kind: MediaKind) -> MediaReference | None:
        candidate = (raw or "").strip()
        if not candidate:
            return None
        local = self.store.parse_local_url(candidate)
        if local is not None:
            local_kind, name = local
            return MediaReference(source=MediaSource.LOCAL, kind=local_kind, value=name)
        if candidate.lower().startswith(("http://", "https://")):
            return MediaReference(source=MediaSource.REMOTE, kind=kind, value=candidate)
        if candidate.lower().startswith("data:"):
            return MediaReference(source=MediaSource.INLINE, kind=kind, value=candidate)
        return None

    async def fetch(self, reference: MediaReference, destination_dir: pathlib.Path, stem: str) -> pathlib.Path:
        if reference.source == MediaSource.LOCAL:
            try:
                return self.store.resolve(reference.kind, reference.value)
            except (ValueError, FileNotFoundError) as exc:
                raise MediaFetchError(str(exc)) from exc
        if reference.source == MediaSource.INLINE:
            mime, data = decode_data_uri(reference.value)
            path = destination_dir / f"{stem}{extension_for_mime(mime, reference.kind)}"
            try:
                async with aiofiles.open(path, "wb") as f:
                    await f.write(data)
            except OSError as exc:
                raise MediaFetchError(f"could not write {path.name}: {exc.strerror or exc}") from exc
            return path
        basename = basename_from_url(reference.value, _DEFAULT_BASENAMES[reference.kind])
        path = destination_dir / f"{stem}_{basename}"
        await self.download(reference.value, path)
        return path

    async def download(self, url: str, destination: pathlib.Path) -> pathlib.Path:
        """Stream ``url`` to ``destination`` following redirects manually up to the budget."""
        current = url
        redirects = 0
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                while True:
                    async with client.stream("GET", current) as response:
                        status = response.status_code
                        location = response.headers.get("location")
                        if status in REDIRECT_STATUSES and location:
                            if redirects >= self.max_redirects:
                                raise RedirectLimitExceeded(
                                    f"too many redirects ({self.max_redirects}) for {url}",
                                    status_code=status,
                                )
                            redirects += 1
                            current = urljoin(current, location)
                            continue
                        if status < 200 or status >= 300:
                            raise MediaFetchError(f"HTTP {status} for {current}", status_code=status)
                        async with aiofiles.open(destination, "wb") as f:
                            async for chunk in response.aiter_bytes():
                                if chunk:
                                    await f.write(chunk)
                    break
        except httpx.TimeoutException as exc:
            raise MediaFetchError(f"request timeout after {self.timeout}s for {current}") from exc
        except httpx.HTTPError as exc:
            raise MediaFetchError(f"request failed for {current}: {exc}") from exc
        except OSError as exc:
            raise MediaFetchError(f"could not write {destination.name}: {exc.strerror or exc}") from exc
        self.log.info(
            "media downloaded",
            extra={"url": url, "redirects": redirects, "path": str(destination)},
        )
        return destination
