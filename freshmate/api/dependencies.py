"""
FastAPI Dependencies for the Detection Service

Provides dependency injection for:
- Inference client (one per process, created in the app lifespan)
- Storage backend (singleton from StorageFactory)
- Confidence calibrator (singleton)
- Detection service (per-request, composed from the above)
"""

from fastapi import Depends, Request

from freshmate.core.config import settings
from freshmate.core.storage import IStorage, get_storage
from freshmate.engines.detection.calibration import ConfidenceCalibrator
from freshmate.engines.detection.inference import InferenceClient
from freshmate.engines.detection.services import DetectionService


# =============================================================================
# Global Singletons
# =============================================================================

_calibrator = ConfidenceCalibrator()


def create_inference_client() -> InferenceClient:
    """Build the process-wide inference client from settings."""
    return InferenceClient(
        base_url=settings.INFERENCE_SERVICE_URL,
        timeout=settings.INFERENCE_TIMEOUT_SECONDS,
        verify_tls=settings.INFERENCE_VERIFY_TLS,
    )


# =============================================================================
# Providers
# =============================================================================

def get_inference_client(request: Request) -> InferenceClient:
    """Returns the inference client stored on app state."""
    return request.app.state.inference_client


def get_calibrator() -> ConfidenceCalibrator:
    """Returns singleton confidence calibrator."""
    return _calibrator


def get_detection_service(
    storage: IStorage = Depends(get_storage),
    inference_client: InferenceClient = Depends(get_inference_client),
    calibrator: ConfidenceCalibrator = Depends(get_calibrator),
) -> DetectionService:
    """Returns a DetectionService wired to the shared adapters."""
    return DetectionService(
        storage=storage,
        inference_client=inference_client,
        calibrator=calibrator,
    )
