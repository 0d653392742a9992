"""
Reference Endpoints

GET /api/v1/fruits            - Static fruit catalog
GET /api/v1/diseases          - Static fruit disease reference
GET /api/v1/supported-fruits  - Fruits the inference model can classify
"""

from fastapi import APIRouter, Depends

from freshmate.api.dependencies import get_inference_client
from freshmate.engines.detection.catalog import get_disease_reference, get_fruit_catalog
from freshmate.engines.detection.inference import InferenceClient
from freshmate.engines.detection.schemas import (
    DiseaseListResponseDTO,
    FruitListResponseDTO,
    SupportedFruitsResponseDTO,
)

router = APIRouter()


@router.get("/fruits", response_model=FruitListResponseDTO)
async def list_fruits():
    fruits = get_fruit_catalog()
    return FruitListResponseDTO(total=len(fruits), data=fruits)


@router.get("/diseases", response_model=DiseaseListResponseDTO)
async def list_diseases():
    diseases = get_disease_reference()
    return DiseaseListResponseDTO(total=len(diseases), data=diseases)


@router.get("/supported-fruits", response_model=SupportedFruitsResponseDTO)
async def supported_fruits(
    inference_client: InferenceClient = Depends(get_inference_client)
):
    """Proxy the inference service's capability listing."""
    fruits = await inference_client.supported_fruits()
    return SupportedFruitsResponseDTO(total=len(fruits), fruits=fruits)
