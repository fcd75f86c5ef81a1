from fastapi import APIRouter, Response

from teammove.core.metrics import METRICS


router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics_endpoint():
    """Prometheus text exposition of billing and HTTP counters."""
    return Response(content=METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
