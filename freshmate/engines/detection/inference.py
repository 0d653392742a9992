"""
Inference Service Client

Talks to the remote ripeness model over HTTP:
- GET  /health            -> {"status": "healthy"}
- POST /predict           -> multipart "file", returns InferenceResponseDTO
- GET  /supported-fruits  -> {"fruits": [...]}

A single bounded timeout applies to every call. Transport exceptions never
leave this module: health checks degrade to False, everything else raises
InferenceError.
"""

from typing import Any, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from freshmate.core.exceptions import InferenceError
from freshmate.core.logging import get_logger
from freshmate.core.metrics import record_inference_call
from freshmate.engines.detection.schemas import InferenceResponseDTO

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class InferenceClient:
    """Async client for the ripeness inference service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        verify_tls: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify_tls = verify_tls

        if not verify_tls:
            logger.warning("inference_tls_verification_disabled", base_url=self.base_url)

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            verify=verify_tls,
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    async def health_check(self) -> bool:
        """True only if the service answers 200 with {"status": "healthy"}."""
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError as e:
            record_inference_call("health", "error")
            logger.error("inference_health_check_failed", error=str(e), error_type=type(e).__name__)
            return False

        record_inference_call(
            "health",
            "success" if response.status_code == 200 else "error",
            response.status_code
        )

        if response.status_code != 200:
            logger.error("inference_health_check_failed", http_status=response.status_code)
            return False

        try:
            body = response.json()
        except ValueError:
            logger.error("inference_health_check_failed", error="malformed body")
            return False

        healthy = isinstance(body, dict) and body.get("status") == "healthy"
        if not healthy:
            logger.warning("inference_service_unhealthy", body=body)
        return healthy

    async def predict(
        self,
        image_bytes: bytes,
        filename: str,
        content_type: str = "application/octet-stream"
    ) -> InferenceResponseDTO:
        """
        Send an image to the model.

        Raises:
            InferenceError: on timeout, transport failure, non-2xx status or
                a body that is not a valid prediction
        """
        files = {"file": (filename, image_bytes, content_type)}

        try:
            response = await self._client.post("/predict", files=files)
        except httpx.TimeoutException:
            record_inference_call("predict", "timeout")
            raise InferenceError(
                "Failed to process image: ML service unavailable (timeout)",
                stage="predict"
            )
        except httpx.HTTPError as e:
            record_inference_call("predict", "error")
            logger.error("inference_predict_transport_error", error=str(e))
            raise InferenceError(
                "Failed to process image: ML service unavailable",
                stage="predict"
            )

        record_inference_call(
            "predict",
            "success" if response.is_success else "error",
            response.status_code
        )

        if not response.is_success:
            raise InferenceError(
                f"ML service returned HTTP {response.status_code}",
                http_status=response.status_code,
                stage="predict"
            )

        try:
            payload = response.json()
        except ValueError:
            raise InferenceError("Malformed response from ML service", stage="predict")

        if not isinstance(payload, dict):
            raise InferenceError("Malformed response from ML service", stage="predict")

        try:
            return InferenceResponseDTO.model_validate(payload)
        except PydanticValidationError as e:
            logger.error("inference_response_invalid", error=str(e))
            raise InferenceError("Malformed response from ML service", stage="predict")

    async def supported_fruits(self) -> List[Any]:
        """Fruits the model can classify."""
        try:
            response = await self._client.get("/supported-fruits")
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            record_inference_call("supported_fruits", "error", e.response.status_code)
            raise InferenceError(
                "Failed to retrieve supported fruits",
                http_status=e.response.status_code
            )
        except (httpx.HTTPError, ValueError) as e:
            record_inference_call("supported_fruits", "error")
            logger.error("inference_supported_fruits_failed", error=str(e))
            raise InferenceError("Failed to retrieve supported fruits")

        record_inference_call("supported_fruits", "success", response.status_code)

        if not isinstance(payload, dict):
            return []
        return payload.get("fruits") or []
