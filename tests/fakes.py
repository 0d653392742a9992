"""Fake inference service and sample payloads shared by the test suites."""

import io
from typing import Callable, Optional

import httpx
from PIL import Image

INFERENCE_URL = "http://inference.test"


def make_image_bytes(image_format: str = "JPEG", size=(16, 16), color=(200, 40, 30)) -> bytes:
    """Encode a small solid-colour image."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=image_format)
    return buffer.getvalue()


JPEG_BYTES = make_image_bytes("JPEG")
PNG_BYTES = make_image_bytes("PNG")


def make_inference_transport(
    health: Optional[dict] = None,
    predict: Optional[dict] = None,
    predict_status: int = 200,
    fruits: Optional[list] = None,
    on_predict: Optional[Callable[[httpx.Request], None]] = None
) -> httpx.MockTransport:
    """Fake inference service speaking the /health, /predict, /supported-fruits contract."""
    health = {"status": "healthy"} if health is None else health
    predict = {"fruit_type": "apple", "ripeness": "ripe", "confidence": 0.5} if predict is None else predict

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200, json=health)
        if request.url.path == "/predict":
            if on_predict:
                on_predict(request)
            return httpx.Response(predict_status, json=predict)
        if request.url.path == "/supported-fruits":
            return httpx.Response(200, json={"fruits": fruits or []})
        return httpx.Response(404)

    return httpx.MockTransport(handler)
