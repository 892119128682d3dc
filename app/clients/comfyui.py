from __future__ import annotations

import logging
import time
from typing import Any, Optional
from uuid import uuid4

import httpx


class BackendSubmissionError(Exception):
    """Raised when the backend rejects a workflow or returns no job id."""


class BackendUnavailableError(Exception):
    """Raised when the backend cannot be reached or lacks the nodes a workflow needs."""


class ComfyUIClient:
    """Async client for the ComfyUI queue/history/view protocol."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        node_cache_ttl: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.node_cache_ttl = node_cache_ttl
        self.client_id = uuid4().hex
        self.log = logger or logging.getLogger(__name__)
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self._node_cache: dict[str, Any] | None = None
        self._node_cache_at = 0.0

    async def aclose(self) -> None:
        await self._http.aclose()

    async def submit(self, prompt: dict[str, Any]) -> str:
        try:
            response = await self._http.post("/prompt", json={"prompt": prompt, "client_id": self.client_id})
        except httpx.HTTPError as exc:
            self.log.error("comfyui submit request failed", extra={"error": str(exc), "base_url": self.base_url})
            raise BackendSubmissionError(f"Failed to connect to ComfyUI at {self.base_url}: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            body = response.text
            self.log.error(
                "comfyui rejected workflow",
                extra={"status": response.status_code, "body": body[:2000]},
            )
            raise BackendSubmissionError(f"ComfyUI rejected workflow ({response.status_code}): {body}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise BackendSubmissionError("Invalid response from ComfyUI: body is not JSON") from exc
        prompt_id = payload.get("prompt_id") if isinstance(payload, dict) else None
        if not prompt_id:
            self.log.error("comfyui returned no prompt_id", extra={"payload": payload})
            raise BackendSubmissionError("ComfyUI did not return a prompt ID")
        self.log.info("comfyui workflow queued", extra={"job_id": prompt_id, "stages": len(prompt)})
        return str(prompt_id)

    async def queue(self) -> dict[str, Any]:
        response = await self._http.get("/queue")
        response.raise_for_status()
        return response.json()

    async def history(self, prompt_id: str) -> dict[str, Any] | None:
        """Return the history entry for ``prompt_id`` or ``None`` while the backend has none."""
        response = await self._http.get(f"/history/{prompt_id}")
        response.raise_for_status()
        payload = response.json() or {}
        return payload.get(prompt_id)

    async def view(self, filename: str, subfolder: str = "", folder_type: str = "output") -> bytes:
        params = {"filename": filename, "subfolder": subfolder, "type": folder_type}
        response = await self._http.get("/view", params=params)
        response.raise_for_status()
        return response.content

    async def object_info(self, force: bool = False) -> dict[str, Any]:
        now = time.monotonic()
        fresh = self._node_cache is not None and now - self._node_cache_at <= self.node_cache_ttl
        if fresh and not force:
            return self._node_cache or {}
        nodes: dict[str, Any] = {}
        try:
            response = await self._http.get("/object_info")
            if response.status_code == 200:
                info = response.json() or {}
                nodes = info.get("nodes", info) if isinstance(info, dict) else {}
        except (httpx.HTTPError, ValueError) as exc:
            self.log.warning("comfyui object_info unavailable", extra={"error": str(exc)})
        self._node_cache = nodes
        self._node_cache_at = now
        return nodes

    async def has_node(self, class_type: str) -> bool:
        return class_type in await self.object_info()

    async def health(self) -> dict[str, Any]:
        try:
            data = await self.queue()
        except (httpx.HTTPError, ValueError) as exc:
            return {"available": False, "error": str(exc)}
        return {
            "available": True,
            "queue_running": len(data.get("queue_running") or []),
            "queue_pending": len(data.get("queue_pending") or []),
        }
