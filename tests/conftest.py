import pytest
from httpx import AsyncClient, ASGITransport
from typing import AsyncGenerator

from freshmate.main import app
from freshmate.api.dependencies import get_calibrator
from freshmate.core.storage import LocalStorage, StorageFactory
from freshmate.engines.detection.calibration import ConfidenceCalibrator, fixed_jitter
from freshmate.engines.detection.inference import InferenceClient

from tests.fakes import INFERENCE_URL, make_inference_transport


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_path=str(tmp_path / "storage"))


@pytest.fixture
async def inference_client() -> AsyncGenerator[InferenceClient, None]:
    client = InferenceClient(INFERENCE_URL, transport=make_inference_transport())
    yield client
    await client.aclose()


@pytest.fixture
def use_inference():
    """Swap the app's inference client for one backed by a fake transport."""
    async def swap(**transport_kwargs) -> InferenceClient:
        await app.state.inference_client.aclose()
        app.state.inference_client = InferenceClient(
            INFERENCE_URL, transport=make_inference_transport(**transport_kwargs)
        )
        return app.state.inference_client

    return swap


@pytest.fixture
async def client(storage, use_inference) -> AsyncGenerator[AsyncClient, None]:
    # Run lifespan, then swap the real adapters for local fakes
    StorageFactory._instance = storage
    app.dependency_overrides[get_calibrator] = lambda: ConfidenceCalibrator(fixed_jitter(0.0))

    async with app.router.lifespan_context(app):
        await use_inference()
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    app.dependency_overrides.clear()
    StorageFactory.reset()
