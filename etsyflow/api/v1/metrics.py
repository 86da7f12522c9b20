"""
Metrics Endpoint

GET /api/v1/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from etsyflow.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - etsyflow_stage_latency_seconds (per stage)
    - etsyflow_remote_calls_total / etsyflow_remote_retries_total
    - etsyflow_asset_transitions_total
    - etsyflow_enhancement_passes_total
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
