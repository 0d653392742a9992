"""
API v1 Router Module - Ripeness Detection

All v1 endpoints are prefixed with /api/v1/

Primary endpoint: POST /api/v1/detect-ripeness

Reference endpoints:
- /api/v1/fruits - Fruit catalog
- /api/v1/diseases - Fruit disease reference
- /api/v1/supported-fruits - Inference model capabilities
"""

from fastapi import APIRouter

from freshmate.api.v1.detect import router as detect_router
from freshmate.api.v1.reference import router as reference_router
from freshmate.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(detect_router, tags=["detection"])
api_v1_router.include_router(reference_router, tags=["reference"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
