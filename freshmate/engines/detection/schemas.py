from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ImageUploadDTO(BaseModel):
    """Uploaded image handed to the detection pipeline. Never persisted as-is."""
    content: bytes = Field(..., repr=False)
    filename: str
    content_type: str = "application/octet-stream"

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lstrip(".").lower()

    @property
    def size(self) -> int:
        return len(self.content)


class InferenceResponseDTO(BaseModel):
    """Raw answer of the inference service's /predict endpoint."""
    model_config = ConfigDict(extra="ignore")

    message: Optional[str] = Field(None, description="Set when the image is not a recognizable fruit")
    fruit_type: Optional[str] = None
    ripeness: Optional[str] = Field(None, description="rotten, unripe, ripe (other labels tolerated)")
    confidence: Optional[float] = Field(None, description="Raw model confidence (0-1)")
    ripeness_probabilities: Optional[Dict[str, Optional[float]]] = None

    @property
    def is_inconclusive(self) -> bool:
        return bool(self.message) and self.confidence is None


class DetectionResultDTO(BaseModel):
    """Calibrated detection result returned to the caller.

    An inconclusive result carries only ``message``.
    """
    message: Optional[str] = None
    fruit_type: Optional[str] = None
    ripeness: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0, description="Calibrated confidence, 2 decimals")
    timestamp: Optional[str] = Field(None, description="ISO-8601 UTC instant the result was produced")


class FruitDTO(BaseModel):
    """Fruit catalog entry."""
    id: int
    fruit_name: str
    fruit_desc: str
    fruit_image_preview: str
    fruit_image_detail: str


class DiseaseDTO(BaseModel):
    """Fruit disease reference entry."""
    id: int
    diseases_name: str
    diseases_desc: str
    diseases_preview: str
    diseases_detail: str


class FruitListResponseDTO(BaseModel):
    total: int
    data: List[FruitDTO]


class DiseaseListResponseDTO(BaseModel):
    total: int
    data: List[DiseaseDTO]


class SupportedFruitsResponseDTO(BaseModel):
    total: int
    fruits: List[Any]
