"""
Bounded download of submitted screenshots.

Every fetch is capped in time (``aiohttp.ClientTimeout``) and in size (the
running byte count is checked on each chunk, whatever Content-Length claims).
Bytes are hashed while streaming into a scoped temporary file which is removed
on every exit path.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import os
import re
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import urlsplit

import aiofiles
import aiohttp
from PIL import Image, UnidentifiedImageError

from verification_bot.core.errors import DownloadError, DownloadFailure
from verification_bot.core.logging_utils import get_logger
from verification_bot.core.models import DownloadedImage, ImageSource

logger = get_logger("image_ingestor")

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")
DEFAULT_MAX_BYTES = 20 * 1024 * 1024
USER_AGENT = "RankVerificationBot/1.0"
CHUNK_SIZE = 64 * 1024

_UNSAFE_FILENAME = re.compile(r"[^\w.\-]")
_EXTENSION_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


def url_extension(url: str) -> str:
    return os.path.splitext(urlsplit(url).path)[1].lower()


def normalize_filename(raw_name: Optional[str], fallback_extension: str = ".png") -> str:
    """Filesystem and attachment safe name, always carrying an extension."""
    fallback_extension = fallback_extension or ".png"
    base = raw_name.strip() if raw_name and raw_name.strip() else f"profile{fallback_extension}"
    normalized = _UNSAFE_FILENAME.sub("_", base)
    if os.path.splitext(normalized)[1]:
        return normalized
    return f"{normalized}{fallback_extension}"


def resolve_content_type(declared: Optional[str], extension: str) -> str:
    if declared and declared.strip():
        return declared.strip()
    return _EXTENSION_TYPES.get(extension.lower(), "image/png")


def is_probably_image(source: ImageSource) -> bool:
    """Accept when either the extension or the declared content type says image."""
    content_type = (source.content_type or "").lower()
    extension = url_extension(source.url)
    if not extension and source.filename:
        extension = os.path.splitext(source.filename)[1].lower()
    return extension in IMAGE_EXTENSIONS or content_type.startswith("image/")


def verify_image_bytes(data: bytes) -> None:
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DownloadError(DownloadFailure.NOT_IMAGE, f"Downloaded data is not a valid image: {exc}") from exc


class ImageIngestor:
    def __init__(
        self,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        timeout_seconds: float = 10.0,
        temp_dir: str | Path = "tmp",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self.temp_dir = Path(temp_dir)
        self._session = session

    @asynccontextmanager
    async def _temp_file(self, extension: str) -> AsyncIterator[Path]:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix="image_", suffix=extension or ".bin", dir=self.temp_dir)
        os.close(fd)
        path = Path(name)
        try:
            yield path
        finally:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Failed to clean up temp file %s: %s", path, exc)

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._session is not None:
            yield self._session
            return
        async with aiohttp.ClientSession(headers={"User-Agent": USER_AGENT}) as session:
            yield session

    def _precheck(self, source: ImageSource) -> None:
        if not is_probably_image(source):
            raise DownloadError(
                DownloadFailure.NOT_IMAGE,
                f"Attachment is not an image (content type {source.content_type!r})",
            )
        if source.size is not None and source.size > self.max_bytes:
            raise DownloadError(
                DownloadFailure.OVERSIZE,
                f"Attachment size {source.size} exceeds maximum {self.max_bytes}",
            )

    async def fetch(self, source: ImageSource) -> DownloadedImage:
        """
        Download ``source`` and return its bytes with their SHA-256 hash.

        Raises :class:`DownloadError` with reason TIMEOUT, OVERSIZE, NOT_IMAGE
        or NETWORK.
        """
        self._precheck(source)
        extension = url_extension(source.url)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        async with self._temp_file(extension) as temp_path:
            try:
                sha256 = await self._download(source.url, temp_path, timeout)
            except asyncio.TimeoutError as exc:
                raise DownloadError(
                    DownloadFailure.TIMEOUT,
                    f"Image download timed out after {self.timeout_seconds}s",
                ) from exc
            except aiohttp.ClientError as exc:
                raise DownloadError(DownloadFailure.NETWORK, f"Image download failed: {exc}") from exc

            async with aiofiles.open(temp_path, "rb") as fh:
                data = await fh.read()

        verify_image_bytes(data)
        filename = normalize_filename(source.filename or os.path.basename(urlsplit(source.url).path), extension)
        content_type = resolve_content_type(source.content_type, extension)
        logger.info("Downloaded image %s (%d bytes, sha256 %s)", filename, len(data), sha256[:12])
        return DownloadedImage(data=data, sha256=sha256, filename=filename, content_type=content_type)

    async def _download(self, url: str, temp_path: Path, timeout: aiohttp.ClientTimeout) -> str:
        digest = hashlib.sha256()
        received = 0
        async with self._session_scope() as session:
            async with session.get(url, timeout=timeout) as response:
                if response.status < 200 or response.status >= 300:
                    raise DownloadError(
                        DownloadFailure.NETWORK,
                        f"Failed to download image: HTTP {response.status}",
                        status=response.status,
                    )

                content_length = response.headers.get("Content-Length")
                if content_length and content_length.isdigit() and int(content_length) > self.max_bytes:
                    raise DownloadError(
                        DownloadFailure.OVERSIZE,
                        f"Image size {content_length} exceeds maximum {self.max_bytes}",
                    )

                async with aiofiles.open(temp_path, "wb") as fh:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        received += len(chunk)
                        if received > self.max_bytes:
                            raise DownloadError(
                                DownloadFailure.OVERSIZE,
                                f"Image size exceeded maximum {self.max_bytes} while streaming",
                            )
                        digest.update(chunk)
                        await fh.write(chunk)
        return digest.hexdigest()


__all__ = [
    "ImageIngestor",
    "IMAGE_EXTENSIONS",
    "is_probably_image",
    "normalize_filename",
    "resolve_content_type",
    "verify_image_bytes",
]
