"""FileService downloads source files referenced by batch items."""

import asyncio
from urllib.parse import urlparse

import httpx

from app.core.errors import FileFetchError
from app.core.settings import Settings
from app.core.utils import get_logger

from .s3_file_service import S3FileService

logger = get_logger("statement-importer.files")


class FileService:
    """Fetch bytes from `http(s)://` URLs with httpx or `s3://bucket/key` URLs with boto3."""

    def __init__(
        self,
        settings: Settings,
        s3_service: S3FileService | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize FileService; the S3 service is created on first s3:// fetch when not given."""
        self.settings = settings
        self._s3 = s3_service
        self._http = http_client

    @property
    def s3(self) -> S3FileService:
        if self._s3 is None:
            self._s3 = S3FileService(self.settings)
        return self._s3

    async def fetch(self, url: str) -> bytes:
        """Download a file and return its bytes; raises FileFetchError on any failure."""
        parsed = urlparse(url or "")
        if parsed.scheme in {"http", "https"}:
            return await self._fetch_http(url)
        if parsed.scheme == "s3":
            key = parsed.path.lstrip("/")
            if not parsed.netloc or not key:
                msg = f"Malformed S3 URL: {url}"
                raise FileFetchError(msg)
            logger.info(f"Downloading s3://{parsed.netloc}/{key}")
            return await asyncio.to_thread(self.s3.download, key, parsed.netloc)
        msg = f"Unsupported file URL: {url}"
        raise FileFetchError(msg, user_message="The file location is not supported.")

    async def _fetch_http(self, url: str) -> bytes:
        logger.info(f"Downloading {url}")
        try:
            if self._http is not None:
                response = await self._http.get(url, timeout=self.settings.download_timeout_seconds)
            else:
                async with httpx.AsyncClient(follow_redirects=True) as client:
                    response = await client.get(url, timeout=self.settings.download_timeout_seconds)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"Download failed with HTTP {exc.response.status_code}: {url}"
            raise FileFetchError(msg, user_message="The file could not be downloaded.") from exc
        except httpx.HTTPError as exc:
            msg = f"Download failed: {exc}"
            raise FileFetchError(msg, user_message="The file could not be downloaded.") from exc
        return response.content
