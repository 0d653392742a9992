"""
Ripeness Detection Orchestrator

Per-request state machine:

    START -> HEALTH_CHECKED -> STORED -> PREDICTED -> CALIBRATED -> DONE
                                  \\________\\___________\\-> ROLLBACK

The blob store and the inference service share no transaction, so the
sequence is a saga with one compensating action: once the image is stored,
any failure (including cancellation of the caller) deletes it again. The
caller always receives the original error, never a rollback error.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional, Set

from freshmate.core.config import settings
from freshmate.core.exceptions import (
    FreshmateBaseException,
    InferenceError,
    ServiceUnavailableError,
    StorageError,
)
from freshmate.core.logging import LogContext, get_logger, request_id_var
from freshmate.core.metrics import (
    record_calibrated_confidence,
    record_detection,
    record_rollback,
    track_stage_latency,
)
from freshmate.core.storage import IStorage, build_storage_key
from freshmate.engines.detection.calibration import CALIBRATION_BANDS, ConfidenceCalibrator
from freshmate.engines.detection.inference import InferenceClient
from freshmate.engines.detection.schemas import (
    DetectionResultDTO,
    ImageUploadDTO,
    InferenceResponseDTO,
)

logger = get_logger(__name__)

# Rollbacks run detached from the request task so a cancelled request still
# cleans up. Strong references keep them alive until they finish.
_pending_rollbacks: Set[asyncio.Task] = set()


class DetectionState(str, Enum):
    START = "START"
    HEALTH_CHECKED = "HEALTH_CHECKED"
    STORED = "STORED"
    PREDICTED = "PREDICTED"
    CALIBRATED = "CALIBRATED"
    DONE = "DONE"
    ROLLBACK = "ROLLBACK"


async def drain_pending_rollbacks(timeout: Optional[float] = None):
    """Wait for in-flight compensating deletes (used on shutdown)."""
    if not _pending_rollbacks:
        return
    logger.info("draining_rollbacks", pending=len(_pending_rollbacks))
    await asyncio.wait(list(_pending_rollbacks), timeout=timeout)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DetectionService:
    """Coordinates health check, storage, inference and calibration for one upload."""

    def __init__(
        self,
        storage: IStorage,
        inference_client: InferenceClient,
        calibrator: ConfidenceCalibrator,
        storage_prefix: str = settings.STORAGE_PREFIX,
        storage_timeout: float = settings.STORAGE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
        key_factory: Optional[Callable[[str], str]] = None
    ):
        self.storage = storage
        self.inference_client = inference_client
        self.calibrator = calibrator
        self.storage_prefix = storage_prefix
        self.storage_timeout = storage_timeout
        self.clock = clock
        self.key_factory = key_factory or (
            lambda filename: build_storage_key(filename, self.storage_prefix, now=self.clock())
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def detect_ripeness(self, upload: ImageUploadDTO) -> DetectionResultDTO:
        """
        Run the full detection pipeline for one uploaded image.

        Raises:
            ServiceUnavailableError: inference service failed its health check
            StorageError: the image could not be stored
            InferenceError: prediction failed or returned unusable data
        """
        request_id = request_id_var.get() or str(uuid.uuid4())

        with LogContext(request_id=request_id, stage="health_check") as ctx:
            state = DetectionState.START
            logger.info(
                "detection_started",
                filename=upload.filename,
                content_type=upload.content_type,
                size_bytes=upload.size
            )

            if not await self._check_health():
                record_detection(ServiceUnavailableError.kind)
                raise ServiceUnavailableError()
            state = self._transition(state, DetectionState.HEALTH_CHECKED)

            ctx.set_stage("upload")
            storage_key = await self._store(upload)
            state = self._transition(state, DetectionState.STORED)

            try:
                ctx.set_stage("predict")
                with track_stage_latency("predict"):
                    response = await self.inference_client.predict(
                        upload.content, upload.filename, upload.content_type
                    )
                state = self._transition(state, DetectionState.PREDICTED)
                logger.info("prediction_received", response=response.model_dump(exclude_none=True))

                if response.is_inconclusive:
                    logger.info("detection_inconclusive", message=response.message, storage_key=storage_key)
                    record_detection("inconclusive")
                    self._transition(state, DetectionState.DONE)
                    return DetectionResultDTO(message=response.message)

                ctx.set_stage("calibrate")
                with track_stage_latency("calibrate"):
                    result = self._calibrate(response)
                state = self._transition(state, DetectionState.CALIBRATED)

            except (Exception, asyncio.CancelledError) as exc:
                if isinstance(exc, (FreshmateBaseException, asyncio.CancelledError)):
                    error = exc
                else:
                    logger.error("detection_unexpected_error", error=str(exc), error_type=type(exc).__name__)
                    error = InferenceError(f"Failed to process image: {exc}", stage=state.value.lower())

                self._transition(state, DetectionState.ROLLBACK)
                ctx.set_stage("rollback")
                await self._rollback(storage_key)

                outcome = "cancelled" if isinstance(exc, asyncio.CancelledError) else error.kind
                record_detection(outcome)
                logger.error("detection_failed", outcome=outcome, error=str(error) or type(error).__name__)

                if error is exc:
                    raise
                raise error from exc

            self._transition(state, DetectionState.DONE)
            record_detection("calibrated")
            logger.info(
                "detection_completed",
                fruit_type=result.fruit_type,
                ripeness=result.ripeness,
                confidence=result.confidence,
                storage_key=storage_key
            )
            return result

    async def get_supported_fruits(self) -> List[Any]:
        """Fruits the inference service can classify."""
        return await self.inference_client.supported_fruits()

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _check_health(self) -> bool:
        try:
            with track_stage_latency("health_check"):
                return await self.inference_client.health_check()
        except Exception as e:
            logger.error("health_check_error", error=str(e), error_type=type(e).__name__)
            return False

    async def _store(self, upload: ImageUploadDTO) -> str:
        storage_key = self.key_factory(upload.filename)
        # An abandoned upload can still land from its worker thread; it is
        # deleted once it settles.
        upload_task = asyncio.ensure_future(
            self.storage.upload(upload.content, storage_key, upload.content_type)
        )
        try:
            with track_stage_latency("upload"):
                await asyncio.wait_for(asyncio.shield(upload_task), timeout=self.storage_timeout)
        except StorageError:
            record_detection(StorageError.kind)
            raise
        except asyncio.TimeoutError:
            self._rollback_when_settled(upload_task, storage_key)
            record_detection(StorageError.kind)
            raise StorageError(f"Image upload timed out after {self.storage_timeout}s", stage="upload")
        except asyncio.CancelledError:
            self._rollback_when_settled(upload_task, storage_key)
            record_detection("cancelled")
            raise
        except Exception as e:
            record_detection(StorageError.kind)
            raise StorageError(f"Failed to upload image: {e}", stage="upload") from e

        logger.info("image_stored", storage_key=storage_key)
        return storage_key

    def _calibrate(self, response: InferenceResponseDTO) -> DetectionResultDTO:
        if response.confidence is None:
            raise InferenceError("Malformed response from ML service: missing confidence", stage="calibrate")
        if not response.ripeness:
            raise InferenceError("Malformed response from ML service: missing ripeness", stage="calibrate")

        confidence = self.calibrator.calibrate(
            response.ripeness,
            response.confidence,
            response.ripeness_probabilities
        )

        logger.info(
            "confidence_calibrated",
            original=response.confidence,
            calibrated=confidence,
            ripeness=response.ripeness,
            probabilities=response.ripeness_probabilities
        )
        record_calibrated_confidence(
            response.ripeness if response.ripeness in CALIBRATION_BANDS else "other",
            confidence
        )

        return DetectionResultDTO(
            message=response.message,
            fruit_type=response.fruit_type,
            ripeness=response.ripeness,
            confidence=confidence,
            timestamp=self.clock().isoformat().replace("+00:00", "Z")
        )

    def _track_rollback(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        _pending_rollbacks.add(task)
        task.add_done_callback(_pending_rollbacks.discard)
        return task

    async def _rollback(self, storage_key: str):
        await asyncio.shield(self._track_rollback(self._delete_stored_image(storage_key)))

    def _rollback_when_settled(self, upload_task: asyncio.Future, storage_key: str):
        """Delete ``storage_key`` after an abandoned upload finishes, whatever its outcome."""
        async def compensate():
            await asyncio.wait([upload_task])
            if upload_task.cancelled():
                logger.warning("abandoned_upload_cancelled", storage_key=storage_key)
            elif upload_task.exception() is not None:
                logger.warning(
                    "abandoned_upload_failed",
                    storage_key=storage_key,
                    error=str(upload_task.exception())
                )
            await self._delete_stored_image(storage_key)

        logger.warning("upload_abandoned", storage_key=storage_key)
        self._track_rollback(compensate())

    async def _delete_stored_image(self, storage_key: str):
        """Best-effort compensating delete. Never raises."""
        try:
            with track_stage_latency("rollback"):
                deleted = await asyncio.wait_for(
                    self.storage.delete(storage_key),
                    timeout=self.storage_timeout
                )
        except Exception as e:
            record_rollback("failed")
            logger.error(
                "rollback_failed",
                storage_key=storage_key,
                error=str(e),
                error_type=type(e).__name__
            )
            return

        record_rollback("deleted" if deleted else "missing")
        logger.info("rollback_completed", storage_key=storage_key, deleted=deleted)

    @staticmethod
    def _transition(current: DetectionState, new: DetectionState) -> DetectionState:
        logger.debug("detection_state_changed", previous=current.value, state=new.value)
        return new
