from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

metrics_router = APIRouter()


@metrics_router.get("/metrics")
async def metrics():
    """Prometheus exposition endpoint for the daemon's process and sync metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
