"""
Detection Endpoint

POST /api/v1/detect-ripeness - Upload a fruit image (multipart field "image")
and receive a calibrated ripeness classification.
"""

import io
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File, UploadFile
from PIL import Image

from freshmate.api.dependencies import get_detection_service
from freshmate.core.config import settings
from freshmate.core.exceptions import ValidationError
from freshmate.core.logging import get_logger
from freshmate.engines.detection.schemas import DetectionResultDTO, ImageUploadDTO
from freshmate.engines.detection.services import DetectionService

logger = get_logger(__name__)
router = APIRouter()

MAX_IMAGE_SIZE_BYTES = settings.MAX_IMAGE_SIZE_BYTES
MAX_IMAGE_SIZE_KB = MAX_IMAGE_SIZE_BYTES // 1024

# Pillow format names of the accepted uploads
ALLOWED_IMAGE_FORMATS = {"JPEG", "PNG"}


def decode_image_format(content: bytes) -> Optional[str]:
    """Fully decode ``content`` with Pillow and return its format, or None if it is not an image."""
    try:
        with Image.open(io.BytesIO(content)) as img:
            img.load()
            return img.format
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        logger.info("image_decode_failed", error=str(e), error_type=type(e).__name__)
        return None


def validate_image_upload(
    content: bytes,
    filename: Optional[str],
    content_type: Optional[str]
) -> ImageUploadDTO:
    """
    Check an uploaded image against the accepted types and size limit.

    Oversized uploads are not decoded.

    Raises:
        ValidationError: with per-field messages for the response body
    """
    errors: List[str] = []
    filename = filename or "upload"
    content_type = (content_type or "").lower()
    extension = Path(filename).suffix.lstrip(".").lower()

    if not content:
        raise ValidationError("Validation failed", messages={"image": ["The image field is required."]})

    oversized = len(content) > MAX_IMAGE_SIZE_BYTES
    image_format = None

    if not oversized:
        image_format = decode_image_format(content)
        if image_format is None:
            errors.append("The image field must be an image.")

    type_allowed = (
        content_type in settings.allowed_image_types
        and extension in settings.allowed_image_extensions
        and (image_format is None or image_format in ALLOWED_IMAGE_FORMATS)
    )
    if not type_allowed:
        allowed = ", ".join(sorted(settings.allowed_image_extensions))
        errors.append(f"The image field must be a file of type: {allowed}.")

    if oversized:
        errors.append(f"The image field must not be greater than {MAX_IMAGE_SIZE_KB} kilobytes.")

    if errors:
        raise ValidationError("Validation failed", messages={"image": errors})

    return ImageUploadDTO(content=content, filename=filename, content_type=content_type)


@router.post(
    "/detect-ripeness",
    response_model=DetectionResultDTO,
    response_model_exclude_none=True
)
async def detect_ripeness(
    image: UploadFile = File(..., description="The fruit image to analyze (jpg, jpeg, png)"),
    service: DetectionService = Depends(get_detection_service)
):
    """
    Detect fruit ripeness from an uploaded image.

    Flow:
    1. Validate the upload (type, size)
    2. Check the inference service is healthy
    3. Store the image, then run the model
    4. Calibrate the confidence into the band of the predicted ripeness

    Returns:
        fruit_type, ripeness, confidence and timestamp, or only a message
        when the image is not a recognizable fruit
    """
    # One byte past the limit is enough to reject without buffering the rest
    content = await image.read(MAX_IMAGE_SIZE_BYTES + 1)
    upload = validate_image_upload(content, image.filename, image.content_type)
    return await service.detect_ripeness(upload)
