import asyncio
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from freshmate.core.exceptions import InferenceError, ServiceUnavailableError, StorageError
from freshmate.core.storage import S3Storage
from freshmate.engines.detection.calibration import ConfidenceCalibrator, fixed_jitter
from freshmate.engines.detection.schemas import ImageUploadDTO, InferenceResponseDTO
from freshmate.engines.detection.services import DetectionService, drain_pending_rollbacks

from tests.fakes import JPEG_BYTES

FIXED_NOW = datetime(2024, 6, 1, 12, 30, 45, tzinfo=timezone.utc)
STORAGE_KEY = "cc/2024-06-01_123045_abcdefghij.jpg"


def make_upload() -> ImageUploadDTO:
    return ImageUploadDTO(content=JPEG_BYTES, filename="apple.jpg", content_type="image/jpeg")


def make_service(storage, inference_client, jitter: float = 0.0, storage_timeout: float = 5.0) -> DetectionService:
    return DetectionService(
        storage=storage,
        inference_client=inference_client,
        calibrator=ConfidenceCalibrator(fixed_jitter(jitter)),
        storage_prefix="cc",
        storage_timeout=storage_timeout,
        clock=lambda: FIXED_NOW,
        key_factory=lambda filename: STORAGE_KEY,
    )


def make_inference(predict_result=None, healthy: bool = True) -> AsyncMock:
    inference_client = AsyncMock()
    inference_client.health_check.return_value = healthy
    if isinstance(predict_result, BaseException):
        inference_client.predict.side_effect = predict_result
    else:
        inference_client.predict.return_value = predict_result
    return inference_client


@pytest.mark.asyncio
async def test_ripe_detection_is_calibrated(storage):
    # Arrange
    inference_client = make_inference(
        InferenceResponseDTO(fruit_type="apple", ripeness="ripe", confidence=0.5)
    )
    service = make_service(storage, inference_client)

    # Act
    result = await service.detect_ripeness(make_upload())

    # Assert
    assert result.fruit_type == "apple"
    assert result.ripeness == "ripe"
    assert result.confidence == 0.85
    assert result.timestamp == "2024-06-01T12:30:45Z"
    assert await storage.exists(STORAGE_KEY)
    inference_client.predict.assert_awaited_once_with(JPEG_BYTES, "apple.jpg", "image/jpeg")


@pytest.mark.asyncio
async def test_rotten_detection_with_positive_jitter(storage):
    inference_client = make_inference(
        InferenceResponseDTO(fruit_type="banana", ripeness="rotten", confidence=0.9)
    )
    service = make_service(storage, inference_client, jitter=0.10)

    result = await service.detect_ripeness(make_upload())

    assert result.confidence == 0.19


@pytest.mark.asyncio
async def test_unhealthy_service_stops_before_upload():
    storage = AsyncMock()
    inference_client = make_inference(healthy=False)
    service = make_service(storage, inference_client)

    with pytest.raises(ServiceUnavailableError) as exc_info:
        await service.detect_ripeness(make_upload())

    assert exc_info.value.code == 503
    assert exc_info.value.message == "ML service is not available"
    storage.upload.assert_not_called()
    inference_client.predict.assert_not_called()


@pytest.mark.asyncio
async def test_health_check_exception_is_treated_as_unavailable():
    storage = AsyncMock()
    inference_client = make_inference()
    inference_client.health_check.side_effect = RuntimeError("socket closed")
    service = make_service(storage, inference_client)

    with pytest.raises(ServiceUnavailableError):
        await service.detect_ripeness(make_upload())

    storage.upload.assert_not_called()


@pytest.mark.asyncio
async def test_predict_failure_deletes_stored_image(storage):
    inference_client = make_inference(
        InferenceError("Failed to process image: ML service unavailable (timeout)")
    )
    service = make_service(storage, inference_client)

    with pytest.raises(InferenceError) as exc_info:
        await service.detect_ripeness(make_upload())

    assert "timeout" in exc_info.value.message
    assert not await storage.exists(STORAGE_KEY)


@pytest.mark.asyncio
async def test_unexpected_error_is_wrapped_and_rolled_back(storage):
    inference_client = make_inference(KeyError("confidence"))
    service = make_service(storage, inference_client)

    with pytest.raises(InferenceError) as exc_info:
        await service.detect_ripeness(make_upload())

    assert isinstance(exc_info.value.__cause__, KeyError)
    assert not await storage.exists(STORAGE_KEY)


@pytest.mark.asyncio
async def test_missing_confidence_is_malformed_and_rolled_back(storage):
    inference_client = make_inference(InferenceResponseDTO(fruit_type="apple", ripeness="ripe"))
    service = make_service(storage, inference_client)

    with pytest.raises(InferenceError) as exc_info:
        await service.detect_ripeness(make_upload())

    assert "missing confidence" in exc_info.value.message
    assert not await storage.exists(STORAGE_KEY)


@pytest.mark.asyncio
async def test_inconclusive_result_keeps_image(storage):
    inference_client = make_inference(InferenceResponseDTO(message="No fruit detected"))
    service = make_service(storage, inference_client)

    result = await service.detect_ripeness(make_upload())

    assert result.message == "No fruit detected"
    assert result.confidence is None
    assert result.ripeness is None
    assert await storage.exists(STORAGE_KEY)


@pytest.mark.asyncio
async def test_rollback_failure_does_not_mask_original_error():
    storage = AsyncMock()
    storage.upload.return_value = STORAGE_KEY
    storage.delete.side_effect = StorageError("bucket gone")
    inference_client = make_inference(InferenceError("ML service returned HTTP 500", http_status=500))
    service = make_service(storage, inference_client)

    with pytest.raises(InferenceError) as exc_info:
        await service.detect_ripeness(make_upload())

    assert exc_info.value.details["http_status"] == 500
    storage.delete.assert_awaited_once_with(STORAGE_KEY)


@pytest.mark.asyncio
async def test_upload_failure_skips_rollback_and_predict():
    storage = AsyncMock()
    storage.upload.side_effect = StorageError("disk full", stage="upload")
    inference_client = make_inference()
    service = make_service(storage, inference_client)

    with pytest.raises(StorageError) as exc_info:
        await service.detect_ripeness(make_upload())

    assert exc_info.value.code == 500
    storage.delete.assert_not_called()
    inference_client.predict.assert_not_called()


@pytest.mark.asyncio
async def test_unexpected_upload_error_becomes_storage_error():
    storage = AsyncMock()
    storage.upload.side_effect = ConnectionResetError("reset by peer")
    service = make_service(storage, make_inference())

    with pytest.raises(StorageError):
        await service.detect_ripeness(make_upload())

    storage.delete.assert_not_called()


@pytest.mark.asyncio
async def test_cancelled_request_still_deletes_stored_image(storage):
    predict_started = asyncio.Event()

    async def hang(*args, **kwargs):
        predict_started.set()
        await asyncio.Event().wait()

    inference_client = make_inference()
    inference_client.predict.side_effect = hang
    service = make_service(storage, inference_client)

    task = asyncio.create_task(service.detect_ripeness(make_upload()))
    await predict_started.wait()
    assert await storage.exists(STORAGE_KEY)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await drain_pending_rollbacks(timeout=5.0)

    assert not await storage.exists(STORAGE_KEY)


class SlowS3Client:
    """In-memory stand-in for a boto3 S3 client whose writes block for ``put_delay`` seconds."""

    def __init__(self, put_delay: float):
        self.put_delay = put_delay
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        time.sleep(self.put_delay)
        self.objects[Key] = Body

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {}

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    def head_bucket(self, Bucket):
        return {}


@pytest.mark.asyncio
async def test_upload_timeout_removes_object_written_late():
    s3_client = SlowS3Client(put_delay=0.3)
    inference_client = make_inference()
    service = make_service(S3Storage(bucket="fruits", client=s3_client), inference_client, storage_timeout=0.05)

    with pytest.raises(StorageError) as exc_info:
        await service.detect_ripeness(make_upload())

    assert "timed out" in exc_info.value.message
    inference_client.predict.assert_not_called()

    await drain_pending_rollbacks(timeout=5.0)

    assert s3_client.objects == {}


@pytest.mark.asyncio
async def test_cancel_during_upload_removes_object_written_late():
    s3_client = SlowS3Client(put_delay=0.3)
    service = make_service(S3Storage(bucket="fruits", client=s3_client), make_inference())

    task = asyncio.create_task(service.detect_ripeness(make_upload()))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await drain_pending_rollbacks(timeout=5.0)

    assert s3_client.objects == {}


@pytest.mark.asyncio
async def test_default_key_uses_prefix_and_clock(storage):
    inference_client = make_inference(
        InferenceResponseDTO(fruit_type="apple", ripeness="unripe", confidence=0.0)
    )
    service = DetectionService(
        storage=storage,
        inference_client=inference_client,
        calibrator=ConfidenceCalibrator(fixed_jitter(0.0)),
        storage_prefix="cc",
        clock=lambda: FIXED_NOW,
    )

    result = await service.detect_ripeness(make_upload())

    stored = list((storage.base_path / "cc").iterdir())
    assert result.confidence == 0.20
    assert len(stored) == 1
    assert stored[0].name.startswith("2024-06-01_123045_")
    assert stored[0].suffix == ".jpg"


@pytest.mark.asyncio
async def test_supported_fruits_delegates_to_client():
    inference_client = MagicMock()
    inference_client.supported_fruits = AsyncMock(return_value=["apple"])
    service = make_service(AsyncMock(), inference_client)

    assert await service.get_supported_fruits() == ["apple"]
