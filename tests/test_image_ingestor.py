import asyncio
import hashlib

import aiohttp
import pytest

from conftest import FakeResponse, FakeSession
from verification_bot.core.errors import DownloadError, DownloadFailure
from verification_bot.core.image_ingestor import (
    ImageIngestor,
    is_probably_image,
    normalize_filename,
    resolve_content_type,
)
from verification_bot.core.models import ImageSource

URL = "https://cdn.example.com/attachments/1/2/profile.png"


def _ingestor(tmp_path, session, *, max_bytes=1024 * 1024):
    return ImageIngestor(max_bytes=max_bytes, timeout_seconds=1.0, temp_dir=tmp_path / "tmp", session=session)


def _temp_files(tmp_path):
    directory = tmp_path / "tmp"
    return list(directory.iterdir()) if directory.exists() else []


@pytest.mark.asyncio
async def test_fetch_returns_bytes_and_hash(tmp_path, png_bytes):
    half = len(png_bytes) // 2
    session = FakeSession(FakeResponse([png_bytes[:half], png_bytes[half:]]))
    ingestor = _ingestor(tmp_path, session)

    image = await ingestor.fetch(ImageSource(url=URL, filename="my shot.png"))

    assert image.data == png_bytes
    assert image.sha256 == hashlib.sha256(png_bytes).hexdigest()
    assert image.filename == "my_shot.png"
    assert image.content_type == "image/png"
    assert session.calls == [URL]
    assert _temp_files(tmp_path) == []


@pytest.mark.asyncio
async def test_streaming_stops_once_cap_is_exceeded(tmp_path):
    response = FakeResponse([b"x" * 8, b"x" * 8, b"x" * 8, b"x" * 8])
    ingestor = _ingestor(tmp_path, FakeSession(response), max_bytes=10)

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url=URL))

    assert info.value.reason is DownloadFailure.OVERSIZE
    assert response.content.consumed == 2
    assert _temp_files(tmp_path) == []


@pytest.mark.asyncio
async def test_declared_length_over_cap_is_rejected_before_reading(tmp_path):
    response = FakeResponse([b"x"], headers={"Content-Length": "4096"})
    ingestor = _ingestor(tmp_path, FakeSession(response), max_bytes=100)

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url=URL))

    assert info.value.reason is DownloadFailure.OVERSIZE
    assert response.content.consumed == 0


@pytest.mark.asyncio
async def test_announced_size_over_cap_skips_network(tmp_path):
    session = FakeSession(FakeResponse([b"x"]))
    ingestor = _ingestor(tmp_path, session, max_bytes=100)

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url=URL, size=101))

    assert info.value.reason is DownloadFailure.OVERSIZE
    assert session.calls == []


@pytest.mark.asyncio
async def test_timeout_maps_to_timeout_reason(tmp_path):
    ingestor = _ingestor(tmp_path, FakeSession(error=asyncio.TimeoutError()))

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url=URL))

    assert info.value.reason is DownloadFailure.TIMEOUT
    assert _temp_files(tmp_path) == []


@pytest.mark.asyncio
async def test_client_error_maps_to_network(tmp_path):
    ingestor = _ingestor(tmp_path, FakeSession(error=aiohttp.ClientConnectionError("reset")))

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url=URL))

    assert info.value.reason is DownloadFailure.NETWORK


@pytest.mark.asyncio
async def test_mid_stream_timeout_cleans_up(tmp_path):
    response = FakeResponse([b"x" * 4], error=asyncio.TimeoutError())
    ingestor = _ingestor(tmp_path, FakeSession(response))

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url=URL))

    assert info.value.reason is DownloadFailure.TIMEOUT
    assert _temp_files(tmp_path) == []


@pytest.mark.asyncio
async def test_http_error_status_is_network_failure(tmp_path):
    ingestor = _ingestor(tmp_path, FakeSession(FakeResponse([], status=404)))

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url=URL))

    assert info.value.reason is DownloadFailure.NETWORK
    assert info.value.status == 404


@pytest.mark.asyncio
async def test_non_image_attachment_is_rejected_without_download(tmp_path):
    session = FakeSession(FakeResponse([b"hello"]))
    ingestor = _ingestor(tmp_path, session)

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url="https://cdn.example.com/notes.txt", content_type="text/plain"))

    assert info.value.reason is DownloadFailure.NOT_IMAGE
    assert session.calls == []


@pytest.mark.asyncio
async def test_undecodable_bytes_are_not_an_image(tmp_path):
    ingestor = _ingestor(tmp_path, FakeSession(FakeResponse([b"definitely not a png"])))

    with pytest.raises(DownloadError) as info:
        await ingestor.fetch(ImageSource(url=URL))

    assert info.value.reason is DownloadFailure.NOT_IMAGE
    assert _temp_files(tmp_path) == []


def test_image_detection_accepts_extension_or_content_type():
    assert is_probably_image(ImageSource(url="https://x/a.JPG"))
    assert is_probably_image(ImageSource(url="https://x/blob", content_type="image/webp"))
    assert is_probably_image(ImageSource(url="https://x/blob", filename="shot.jpeg"))
    assert not is_probably_image(ImageSource(url="https://x/a.gif"))


def test_filename_and_content_type_helpers():
    assert normalize_filename(None) == "profile.png"
    assert normalize_filename("my shot?.jpg", ".png") == "my_shot_.jpg"
    assert normalize_filename("shot", ".webp") == "shot.webp"
    assert resolve_content_type(None, ".jpeg") == "image/jpeg"
    assert resolve_content_type(" image/webp ", ".png") == "image/webp"
