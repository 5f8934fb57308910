from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from app.core.auth import api_key_configured, verify_api_key
from app.core.errors import ConfigurationAppError
from app.core.rate_limit import enforce_processing_rate_limit
from app.schemas.process import ProcessImageRequest, ProcessingResult
from app.services.image_splitter import split_image

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Processing"])


@router.post(
    "/ui/process",
    response_model=ProcessingResult,
    dependencies=[Depends(enforce_processing_rate_limit)],
)
async def process_image_ui(body: ProcessImageRequest) -> ProcessingResult:
    """Split an image for the bundled web UI.

    No client credentials are required, but the endpoint only serves when the
    server has an API key configured, so a deployment cannot expose free
    processing by forgetting the key. Shares the processing quota with the
    public API.

    Raises:
        ConfigurationAppError: 500 when no API key is configured.
        ImageProcessingAppError: 500 when the image cannot be fetched or split.
    """
    if not api_key_configured():
        logger.error("process.api_key_not_configured", extra={"entry_point": "ui"})
        raise ConfigurationAppError(
            code="api_key_not_configured",
            message="Server error. Please try again later.",
        )

    logger.info(
        "process.requested",
        extra={
            "entry_point": "ui",
            "chunk_height": body.chunk_height,
            "resize_width": body.resize_width,
        },
    )
    return await split_image(body.url, body.chunk_height, body.resize_width)


@router.post(
    "/v1/process",
    response_model=ProcessingResult,
    # Rate limit before auth so failed key guesses also consume quota
    dependencies=[Depends(enforce_processing_rate_limit), Depends(verify_api_key)],
)
async def process_image_api(body: ProcessImageRequest) -> ProcessingResult:
    """Split an image for programmatic clients.

    Requires the X-API-Key header.

    Raises:
        AuthenticationAppError: 401 on a missing or invalid key.
        ImageProcessingAppError: 500 when the image cannot be fetched or split.
    """
    logger.info(
        "process.requested",
        extra={
            "entry_point": "api",
            "chunk_height": body.chunk_height,
            "resize_width": body.resize_width,
        },
    )
    return await split_image(body.url, body.chunk_height, body.resize_width)
