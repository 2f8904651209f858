"""Upstream Client: HTTP façade over the generation API.

Translates one generation call into the upstream's JSON protocol, sends it
with the admitted credential's secret, and returns the artifact URL. Every
failure is raised as an ``UpstreamError`` carrying a ``UpstreamErrorKind``.

Endpoints:
  - POST /v1/images/generations   text → image
  - POST /v1/images/edits         image + text → image
  - POST /v1/videos/generations   text (optionally + image) → video
  - POST /v1/characters/generate  video → character id, character + text → video
  - POST /v1/videos/remix         remix id + text → video

The client never retries; the orchestrator owns that decision.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from app.gateway.errors import UpstreamError
from app.gateway.proxy_pool import ProxyPool
from app.gateway.types import Credential, Orientation, UpstreamErrorKind

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_N_FRAMES = 300


class UpstreamClient(Protocol):
    """Capability interface used by the orchestrator."""

    async def generate_image(
        self, prompt: str, credential: Credential, width: int | None = None, height: int | None = None
    ) -> str: ...

    async def generate_image_from_image(
        self, prompt: str, image: str, credential: Credential, width: int | None = None, height: int | None = None
    ) -> str: ...

    async def generate_video(
        self,
        prompt: str,
        credential: Credential,
        n_frames: int | None = None,
        orientation: Orientation | None = None,
    ) -> str: ...

    async def generate_video_from_image(
        self,
        prompt: str,
        image: str,
        credential: Credential,
        n_frames: int | None = None,
        orientation: Orientation | None = None,
    ) -> str: ...

    async def generate_character(self, video: str, credential: Credential) -> str: ...

    async def generate_with_character(self, character_id: str, prompt: str, credential: Credential) -> str: ...

    async def remix_video(self, remix_id: str, prompt: str, credential: Credential) -> str: ...

    async def fetch_artifact(self, url: str) -> bytes: ...


def _size(width: int | None, height: int | None) -> str:
    return f"{width}x{height}" if width and height else DEFAULT_IMAGE_SIZE


class HttpUpstreamClient:
    """httpx implementation of ``UpstreamClient``."""

    def __init__(
        self,
        base_url: str,
        proxy_pool: ProxyPool | None = None,
        image_timeout: float = 180.0,
        video_timeout: float = 600.0,
        download_timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.proxy_pool = proxy_pool
        self.image_timeout = image_timeout
        self.video_timeout = video_timeout
        self.download_timeout = download_timeout

    # -- image ---------------------------------------------------------------

    async def generate_image(
        self, prompt: str, credential: Credential, width: int | None = None, height: int | None = None
    ) -> str:
        payload = {
            "prompt": prompt,
            "model": "sora-image",
            "response_format": "url",
            "size": _size(width, height),
        }
        data = await self._post("/v1/images/generations", payload, credential, self.image_timeout)
        return self._first(data, "url")

    async def generate_image_from_image(
        self, prompt: str, image: str, credential: Credential, width: int | None = None, height: int | None = None
    ) -> str:
        payload = {
            "prompt": prompt,
            "image": image,
            "model": "sora-image",
            "response_format": "url",
            "size": _size(width, height),
        }
        data = await self._post("/v1/images/edits", payload, credential, self.image_timeout)
        return self._first(data, "url")

    # -- video ---------------------------------------------------------------

    async def generate_video(
        self,
        prompt: str,
        credential: Credential,
        n_frames: int | None = None,
        orientation: Orientation | None = None,
    ) -> str:
        payload = self._video_payload(prompt, n_frames, orientation)
        data = await self._post("/v1/videos/generations", payload, credential, self.video_timeout)
        return self._first(data, "url")

    async def generate_video_from_image(
        self,
        prompt: str,
        image: str,
        credential: Credential,
        n_frames: int | None = None,
        orientation: Orientation | None = None,
    ) -> str:
        payload = self._video_payload(prompt, n_frames, orientation)
        payload["image"] = image
        data = await self._post("/v1/videos/generations", payload, credential, self.video_timeout)
        return self._first(data, "url")

    async def generate_character(self, video: str, credential: Credential) -> str:
        payload = {"video": video, "model": "sora-character"}
        data = await self._post("/v1/characters/generate", payload, credential, self.video_timeout)
        return self._first(data, "character_id")

    async def generate_with_character(self, character_id: str, prompt: str, credential: Credential) -> str:
        payload = {"character_id": character_id, "prompt": prompt, "model": "sora-character"}
        data = await self._post("/v1/characters/generate", payload, credential, self.video_timeout)
        return self._first(data, "url")

    async def remix_video(self, remix_id: str, prompt: str, credential: Credential) -> str:
        payload = {"remix_id": remix_id, "prompt": prompt, "model": "sora-video"}
        data = await self._post("/v1/videos/remix", payload, credential, self.video_timeout)
        return self._first(data, "url")

    # -- artifacts -----------------------------------------------------------

    async def fetch_artifact(self, url: str) -> bytes:
        """Download a generated artifact (used to populate the cache)."""
        try:
            async with httpx.AsyncClient(timeout=self.download_timeout, follow_redirects=True) as client:
                resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
        except httpx.TimeoutException as e:
            raise UpstreamError(UpstreamErrorKind.TIMEOUT, f"Download timed out: {url}") from e
        except httpx.HTTPStatusError as e:
            raise self._status_error(e.response) from e
        except httpx.HTTPError as e:
            raise UpstreamError(UpstreamErrorKind.TRANSPORT, f"Download failed: {e}") from e

    # -- internals -----------------------------------------------------------

    @staticmethod
    def _video_payload(prompt: str, n_frames: int | None, orientation: Orientation | None) -> dict[str, Any]:
        return {
            "prompt": prompt,
            "model": "sora-video",
            "n_frames": n_frames or DEFAULT_N_FRAMES,
            "orientation": (orientation or Orientation.LANDSCAPE).value,
        }

    async def _post(self, endpoint: str, payload: dict[str, Any], credential: Credential, timeout: float) -> Any:
        url = f"{self.base_url}{endpoint}"
        proxy = self.proxy_pool.next_proxy_url() if self.proxy_pool else None
        headers = {
            "Authorization": f"Bearer {credential.secret}",
            "Content-Type": "application/json",
        }

        logger.debug("POST %s with credential %d (proxy=%s)", endpoint, credential.id, bool(proxy))

        try:
            async with httpx.AsyncClient(timeout=timeout, proxy=proxy) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError(UpstreamErrorKind.TIMEOUT, f"{endpoint} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(UpstreamErrorKind.TRANSPORT, f"{endpoint}: {e}") from e

        if resp.status_code >= 400:
            raise self._status_error(resp)

        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(UpstreamErrorKind.INVALID_RESPONSE, f"{endpoint} returned non-JSON body") from e

    @staticmethod
    def _status_error(resp: httpx.Response) -> UpstreamError:
        code = resp.status_code
        body = resp.text[:200]
        if code in (401, 403):
            return UpstreamError(UpstreamErrorKind.UNAUTHORIZED, body or "Credential rejected", code)
        if code == 429:
            return UpstreamError(UpstreamErrorKind.RATE_LIMITED, body or "Rate limited by upstream", code)
        return UpstreamError(UpstreamErrorKind.TRANSPORT, body or f"HTTP {code}", code)

    @staticmethod
    def _first(data: Any, field_name: str) -> str:
        try:
            value = data["data"][0][field_name]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamError(
                UpstreamErrorKind.INVALID_RESPONSE, f"Missing data[0].{field_name} in upstream response"
            ) from e
        if not isinstance(value, str) or not value:
            raise UpstreamError(UpstreamErrorKind.INVALID_RESPONSE, f"Empty data[0].{field_name} in upstream response")
        return value
