"""
Prometheus metrics endpoint.

Public, unauthenticated, following standard Prometheus practice.
"""

from fastapi import APIRouter, Response

from ..monitoring.prometheus_metrics import prometheus_metrics

router = APIRouter()


@router.get("/metrics/prometheus", include_in_schema=False)
def prometheus_scrape() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
    )
