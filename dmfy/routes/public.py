# /dmfy/routes/public.py

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from dmfy.config.settings import settings
from dmfy.models.flow import utcnow
from dmfy.utils.dependencies import verify_metrics_access

# Public endpoints that need no authentication: liveness checks and the
# Prometheus scrape endpoint (API-key protected when API_KEY is set).

router = APIRouter()

@router.get("/", response_class=PlainTextResponse)
async def root():
    """Root endpoint, used by the hosting platform's health check."""
    return "DMFY webhook is live"

@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "environment": settings.environment, "timestamp": utcnow()}

@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
