"""Image fetch-and-slice pipeline.

Downloads an image server-side, optionally resizes it to a target width and
cuts it top-down into chunks of a fixed height. Each chunk is returned as a
PNG data URI.

Downloads try browser-like headers first (some CDNs reject obvious bots with
403), retrying once, then a last attempt with minimal headers.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import time

import httpx
from PIL import Image, UnidentifiedImageError

from app.core.config import settings
from app.core.errors import ImageProcessingAppError
from app.schemas.process import ImageChunk, ProcessingResult

logger = logging.getLogger(__name__)


BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Sec-Fetch-Dest": "image",
    "Sec-Fetch-Mode": "no-cors",
    "Sec-Fetch-Site": "cross-site",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}
MINIMAL_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; SplitStream/1.0)"}
BROWSER_ATTEMPTS = 2

# Modes Pillow can write as PNG without conversion
_PNG_MODES = {"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"}

USER_MESSAGES = {
    "image_fetch_http_error": (
        "Could not access the image URL. The server returned an error. "
        "Check if the URL is publicly accessible."
    ),
    "image_invalid_content": "The URL does not point to a valid image file.",
    "image_fetch_timeout": (
        "The image took too long to download. Please try a smaller image or different URL."
    ),
    "image_dns_error": "Could not resolve the domain. Please check the URL.",
    "image_connection_refused": (
        "Connection refused by the server. The URL may be temporarily unavailable."
    ),
    "image_processing_timeout": "The image took too long to process. Please try a smaller image.",
    "image_processing_failed": "Failed to process image. Please try again later.",
}


def _app_error(code: str, **context) -> ImageProcessingAppError:
    return ImageProcessingAppError(
        code=code,
        message=USER_MESSAGES[code],
        details={"context": context} if context else None,
    )


def _classify_fetch_error(exc: Exception) -> ImageProcessingAppError:
    """Map a download failure to a user-facing error."""
    if isinstance(exc, httpx.HTTPStatusError):
        return _app_error("image_fetch_http_error", http_status=exc.response.status_code)
    if isinstance(exc, httpx.TimeoutException):
        return _app_error("image_fetch_timeout")
    if isinstance(exc, httpx.ConnectError):
        text = str(exc).lower()
        if "name or service not known" in text or "nodename" in text or "getaddrinfo" in text:
            return _app_error("image_dns_error")
        if "refused" in text:
            return _app_error("image_connection_refused")
    return _app_error("image_processing_failed")


async def _download(client: httpx.AsyncClient, url: str, headers: dict[str, str]) -> bytes:
    response = await client.get(url, headers=headers)
    response.raise_for_status()

    content_type = response.headers.get("content-type", "")
    if content_type and not content_type.startswith("image/"):
        logger.warning(
            "image.invalid_content_type",
            extra={"content_type": content_type[:64], "http_status": response.status_code},
        )
        raise _app_error("image_invalid_content")

    return response.content


async def fetch_image_bytes(url: str, *, client: httpx.AsyncClient | None = None) -> bytes:
    """Download the image at ``url``.

    Args:
        url: Source image URL (http/https, validated by the request schema).
        client: Optional shared client; a short-lived one is created otherwise.

    Returns:
        Raw image bytes.

    Raises:
        ImageProcessingAppError: If every strategy fails or the response is
            not an image.
    """
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            timeout=settings.app.image_fetch_timeout_seconds,
            follow_redirects=True,
        )

    delay = settings.app.image_fetch_retry_delay_seconds
    last_error: Exception | None = None
    try:
        for attempt in range(1, BROWSER_ATTEMPTS + 1):
            try:
                data = await _download(client, url, BROWSER_HEADERS)
                logger.info(
                    "image.fetched",
                    extra={"strategy": "browser", "attempt": attempt, "size_bytes": len(data)},
                )
                return data
            except httpx.HTTPError as exc:
                last_error = exc
                logger.warning(
                    "image.fetch_attempt_failed",
                    extra={
                        "image_url": url,
                        "strategy": "browser",
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                    },
                )
                if attempt < BROWSER_ATTEMPTS:
                    await asyncio.sleep(delay)

        try:
            data = await _download(client, url, MINIMAL_HEADERS)
            logger.info("image.fetched", extra={"strategy": "minimal", "size_bytes": len(data)})
            return data
        except httpx.HTTPError as exc:
            last_error = exc
            logger.error(
                "image.fetch_failed",
                extra={
                    "image_url": url,
                    "strategy": "minimal",
                    "error_type": type(exc).__name__,
                },
            )
    finally:
        if owns_client:
            await client.aclose()

    raise _classify_fetch_error(last_error) from last_error


def _encode_png(image: Image.Image) -> str:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def slice_image(
    raw_bytes: bytes, chunk_height: int, resize_width: int | None = None
) -> tuple[int, int, list[ImageChunk]]:
    """Decode, optionally resize, and cut an image into vertical chunks.

    Args:
        raw_bytes: Encoded source image.
        chunk_height: Target chunk height in pixels (last chunk may be shorter).
        resize_width: Target width; height follows the aspect ratio.

    Returns:
        Tuple of (width, height, chunks) after resizing.

    Raises:
        PIL.UnidentifiedImageError: If the bytes are not a decodable image.
        ValueError: If chunk_height is not positive.
    """
    if chunk_height < 1:
        raise ValueError("chunk_height must be >= 1")

    with Image.open(io.BytesIO(raw_bytes)) as source:
        source.load()
        image = source if source.mode in _PNG_MODES else source.convert("RGBA")

        if resize_width and image.width != resize_width:
            new_height = max(1, round(image.height * resize_width / image.width))
            image = image.resize((resize_width, new_height), Image.Resampling.LANCZOS)

        width, height = image.size
        chunks: list[ImageChunk] = []
        y_offset = 0
        while y_offset < height:
            actual_height = min(chunk_height, height - y_offset)
            chunk = image.crop((0, y_offset, width, y_offset + actual_height))
            chunks.append(
                ImageChunk(
                    id=len(chunks),
                    base64=_encode_png(chunk),
                    height=actual_height,
                    y_offset=y_offset,
                )
            )
            y_offset += actual_height

    return width, height, chunks


async def split_image(
    url: str,
    chunk_height: int,
    resize_width: int | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> ProcessingResult:
    """Fetch the image at ``url`` and split it into chunks.

    Decoding and encoding run in the default thread pool with a timeout so a
    huge image cannot stall the event loop.

    Raises:
        ImageProcessingAppError: On download, decode or timeout failures.
    """
    start = time.perf_counter()
    raw_bytes = await fetch_image_bytes(url, client=client)

    loop = asyncio.get_running_loop()
    timeout_seconds = settings.app.image_processing_timeout_seconds
    try:
        width, height, chunks = await asyncio.wait_for(
            loop.run_in_executor(None, slice_image, raw_bytes, chunk_height, resize_width),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        logger.warning("image.processing_timeout", extra={"timeout_seconds": timeout_seconds})
        raise _app_error("image_processing_timeout") from exc
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.warning(
            "image.decode_failed",
            extra={"error_type": type(exc).__name__, "size_bytes": len(raw_bytes)},
        )
        raise _app_error("image_invalid_content") from exc

    processing_time_ms = int((time.perf_counter() - start) * 1000)
    logger.info(
        "image.split",
        extra={
            "width": width,
            "height": height,
            "chunk_height": chunk_height,
            "resize_width": resize_width,
            "chunk_count": len(chunks),
            "processing_time_ms": processing_time_ms,
        },
    )

    return ProcessingResult(
        original_url=url,
        total_width=width,
        total_height=height,
        chunk_height=chunk_height,
        resize_width=resize_width,
        chunk_count=len(chunks),
        chunks=chunks,
        processing_time_ms=processing_time_ms,
    )
