# paygate/routes/metrics.py
from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from paygate.services.metrics import render_prometheus

router = APIRouter(tags=["metrics"])

# Prometheus text exposition format
PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


@router.get("/metrics", response_class=PlainTextResponse)
def gateway_metrics():
    """Gateway counters for the Prometheus scraper."""
    return PlainTextResponse(render_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
