"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/batch/* - session batch: upload, prompts, enhancement, export
- /api/v1/metrics - Prometheus metrics
"""

from fastapi import APIRouter

from etsyflow.api.v1.batch import router as batch_router
from etsyflow.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(batch_router, prefix="/batch", tags=["batch"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
