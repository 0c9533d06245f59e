"""
Local image cache.

Downloads remote listing images into a directory keyed by a hash of the
source URL, so repeated runs reuse the file instead of hitting the CDN.
"""

import asyncio
import hashlib
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

import httpx

from aggregator.config.settings import Settings, get_settings
from aggregator.services.fetchers import UserAgentPool, build_headers
from aggregator.utils.logger import get_logger
from aggregator.utils.retry import NetworkError, async_retry

logger = get_logger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".avif"}
MAX_IMAGE_BYTES = 8 * 1024 * 1024


def image_filename(url: str) -> str:
    """sha1 of the URL plus the original extension (``.jpg`` when unknown)."""
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
    suffix = Path(urlsplit(url).path).suffix.lower()
    if suffix not in IMAGE_EXTENSIONS:
        suffix = ".jpg"
    return f"{digest}{suffix}"


class ImageCache:
    """Downloads images on demand; every failure resolves to ``None``."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        directory: Optional[Path] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.directory = Path(directory or self.settings.image_cache_dir)
        self._client = client
        self._owns_client = client is None
        self._user_agents = UserAgentPool(rotate=self.settings.rotate_user_agents)
        self.downloaded = 0
        self.failed = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.request_timeout_seconds, connect=10.0),
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def path_for(self, url: str) -> Path:
        return self.directory / image_filename(url)

    async def _download(self, url: str) -> bytes:
        client = await self._get_client()
        try:
            response = await client.get(url, headers=build_headers(self._user_agents.get()))
        except httpx.TransportError as e:
            raise NetworkError(f"Image download failed: {e}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise NetworkError(f"Image host answered HTTP {response.status_code}")
        response.raise_for_status()
        content_type = response.headers.get("content-type", "")
        if content_type and not content_type.startswith("image/"):
            raise ValueError(f"Not an image: {content_type}")
        if len(response.content) > MAX_IMAGE_BYTES:
            raise ValueError("Image too large")
        return response.content

    async def fetch(self, url: Optional[str]) -> Optional[Path]:
        """Return the local path of ``url``, downloading it when missing."""
        if not url or not url.lower().startswith(("http://", "https://")):
            return None

        target = self.path_for(url)
        if target.exists() and target.stat().st_size > 0:
            return target

        download = async_retry(
            max_attempts=max(1, self.settings.image_download_attempts),
            exceptions=(NetworkError,),
            initial_wait=0.5,
        )(self._download)

        try:
            content = await download(url)
        except (NetworkError, httpx.HTTPStatusError, ValueError) as e:
            self.failed += 1
            logger.warning("image_download_failed", url=url, error=str(e))
            return None

        await asyncio.to_thread(self._write, target, content)
        self.downloaded += 1
        return target

    @staticmethod
    def _write(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        tmp.write_bytes(content)
        tmp.replace(target)

    def get_stats(self) -> dict[str, int]:
        return {"downloaded": self.downloaded, "failed": self.failed}


__all__ = ["ImageCache", "image_filename"]
