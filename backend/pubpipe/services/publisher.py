"""Destination platform publish client.

HttpPublishClient uploads videos and caption tracks to the destination's
HTTP API. Transport errors, 429 and 5xx responses are retried with
exponential backoff; other errors raise PublishError at once.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pubpipe.schemas.metadata import VideoMetadata

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """The destination rejected or failed a publish request."""


class _RetryablePublishError(PublishError):
    pass


class PublishClient(ABC):
    @abstractmethod
    async def publish_video(
        self,
        video_path: Path,
        metadata: VideoMetadata,
        cover_path: Optional[Path] = None,
    ) -> str:
        """Upload a video and return the destination's id for it."""
        ...

    @abstractmethod
    async def publish_captions(self, platform_id: str, caption_path: Path, language: str) -> None:
        """Attach a caption track to an already published video."""
        ...

    async def aclose(self) -> None:
        """Release network resources held by the client."""


class HttpPublishClient(PublishClient):
    """Publish over the destination's multipart upload API.

    POST /videos            -> {"id": "<platform id>"}
    POST /videos/{id}/captions
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        *,
        timeout: float = 300.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def publish_video(
        self,
        video_path: Path,
        metadata: VideoMetadata,
        cover_path: Optional[Path] = None,
    ) -> str:
        data = {
            "title": metadata.title,
            "description": metadata.description,
            "tags": ",".join(metadata.tags),
        }

        # Read once, off the event loop; retries resend the same bytes
        files = {"video": (video_path.name, await asyncio.to_thread(video_path.read_bytes), "video/mp4")}
        if cover_path is not None and cover_path.exists():
            files["cover"] = (cover_path.name, await asyncio.to_thread(cover_path.read_bytes), "image/jpeg")

        async def _send() -> httpx.Response:
            return await self._client.post("/videos", data=data, files=files)

        response = await self._with_retries(_send)
        try:
            body = response.json()
        except ValueError as e:
            raise PublishError(f"Destination returned invalid JSON: {e}") from e
        platform_id = body.get("id") if isinstance(body, dict) else None
        if not platform_id:
            raise PublishError("Destination response carried no video id")
        logger.info(f"Published {video_path.name} as {platform_id}")
        return str(platform_id)

    async def publish_captions(self, platform_id: str, caption_path: Path, language: str) -> None:
        content = await asyncio.to_thread(caption_path.read_bytes)

        async def _send() -> httpx.Response:
            files = {"file": (caption_path.name, content, "application/x-subrip")}
            return await self._client.post(
                f"/videos/{platform_id}/captions",
                data={"language": language},
                files=files,
            )

        await self._with_retries(_send)
        logger.info(f"Attached {language} captions to {platform_id}")

    async def _with_retries(self, send) -> httpx.Response:
        @retry(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._retry_delay, min=2 * self._retry_delay, max=30),
            retry=retry_if_exception_type((httpx.TransportError, _RetryablePublishError)),
            reraise=True,
        )
        async def _call() -> httpx.Response:
            response = await send()
            if response.status_code == 429 or response.status_code >= 500:
                raise _RetryablePublishError(f"HTTP {response.status_code}: {response.text[:300]}")
            if response.status_code >= 400:
                raise PublishError(f"HTTP {response.status_code}: {response.text[:300]}")
            return response

        try:
            return await _call()
        except httpx.TransportError as e:
            raise PublishError(f"Destination unreachable: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
