"""External media tooling: yt-dlp downloads, ffmpeg frame grabs and thumbnails.

Command-line tools run as asyncio subprocesses; thumbnails are fetched
over httpx with tenacity retries.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

THUMBNAIL_QUALITIES = ("maxresdefault", "hqdefault")

_YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_YOUTUBE_URL_RE = re.compile(r"(?:v=|youtu\.be/|/shorts/|/embed/)([A-Za-z0-9_-]{11})")


class MediaToolError(Exception):
    """An external media tool failed."""


def build_source_url(source_ref: str) -> str:
    """Resolve a source reference to a downloadable URL.

    Full URLs pass through, "BV" ids map to Bilibili and anything else is
    treated as a YouTube video id.
    """
    if source_ref.startswith(("http://", "https://")):
        return source_ref
    if source_ref.startswith("BV"):
        return f"https://www.bilibili.com/video/{source_ref}"
    return f"https://www.youtube.com/watch?v={source_ref}"


def youtube_id(source_ref: str) -> Optional[str]:
    """Return the YouTube video id behind a reference, if it is one."""
    if _YOUTUBE_ID_RE.match(source_ref):
        return source_ref
    match = _YOUTUBE_URL_RE.search(source_ref)
    if match and ("youtube.com" in source_ref or "youtu.be" in source_ref):
        return match.group(1)
    return None


async def run_command(args: Sequence[str], timeout: Optional[float] = None) -> str:
    """Run a command, returning stdout; non-zero exit raises MediaToolError."""
    logger.debug(f"Running: {' '.join(args)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise MediaToolError(f"{args[0]} not found on PATH") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        raise MediaToolError(f"{args[0]} timed out after {timeout}s") from e

    if process.returncode != 0:
        tail = stderr.decode(errors="replace").strip().splitlines()[-5:]
        raise MediaToolError(f"{args[0]} exited with {process.returncode}: {' | '.join(tail)}")
    return stdout.decode(errors="replace")


class YtDlpDownloader:
    """Download source videos with yt-dlp into a unit's workspace."""

    def __init__(
        self,
        binary: str = "yt-dlp",
        proxy: Optional[str] = None,
        cookies_from_browser: Optional[str] = None,
    ) -> None:
        self.binary = binary
        self.proxy = proxy
        self.cookies_from_browser = cookies_from_browser

    def build_args(self, url: str, dest_dir: Path) -> List[str]:
        args = [
            self.binary,
            "-P", str(dest_dir),
            "-o", "%(id)s.%(ext)s",
            "--merge-output-format", "mp4",
            "--no-progress",
        ]
        if self.cookies_from_browser:
            args += ["--cookies-from-browser", self.cookies_from_browser]
        if self.proxy:
            args += ["--proxy", self.proxy]
        args += ["--", url]
        return args

    async def download(self, source_ref: str, dest_dir: Path) -> Path:
        """Download the video and return the resulting file."""
        url = build_source_url(source_ref)
        logger.info(f"Downloading {url} into {dest_dir}")
        await run_command(self.build_args(url, dest_dir))
        videos = sorted(p for p in dest_dir.glob("*.mp4") if p.is_file())
        if not videos:
            raise MediaToolError(f"yt-dlp finished but no video file was written for {source_ref}")
        return videos[0]


class FfmpegTool:
    def __init__(self, binary: str = "ffmpeg") -> None:
        self.binary = binary

    async def extract_frame(self, video_path: Path, output_path: Path, at_seconds: float = 5.0) -> Path:
        """Grab one frame as a JPEG, used as a cover when no thumbnail exists."""
        await run_command([
            self.binary, "-y",
            "-ss", str(at_seconds),
            "-i", str(video_path),
            "-frames:v", "1",
            "-q:v", "2",
            str(output_path),
        ], timeout=120)
        if not output_path.exists():
            raise MediaToolError(f"ffmpeg wrote no frame for {video_path.name}")
        return output_path


class ThumbnailFetcher:
    """Fetch a video's published thumbnail, best quality first."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._timeout = timeout
        self._transport = transport

    async def fetch(self, video_id: str, output_path: Path) -> Optional[Path]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for quality in THUMBNAIL_QUALITIES:
                url = f"https://img.youtube.com/vi/{video_id}/{quality}.jpg"
                try:
                    data = await self._get_image(client, url)
                except (httpx.HTTPError, MediaToolError) as e:
                    logger.warning(f"Thumbnail {quality} for {video_id} unavailable: {e}")
                    continue
                await asyncio.to_thread(output_path.write_bytes, data)
                logger.info(f"Saved {quality} thumbnail for {video_id}")
                return output_path
        return None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get_image(self, client: httpx.AsyncClient, url: str) -> bytes:
        response = await client.get(url)
        if response.status_code == 404:
            raise MediaToolError("not found (404)")
        response.raise_for_status()
        if not response.headers.get("content-type", "").startswith("image/"):
            raise MediaToolError("response is not an image")
        return response.content
