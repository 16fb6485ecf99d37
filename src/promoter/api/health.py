"""Health check endpoints."""
from fastapi import APIRouter, status

from src.promoter.core.config import settings
from src.promoter.services.promotion_service import promotion_service

router = APIRouter()


@router.get("/healthz", status_code=status.HTTP_200_OK)
async def healthz():
    """Liveness probe: is the process alive?"""
    return {
        "status": "ok",
        "version": settings.VERSION,
        "service": settings.PROJECT_NAME,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready():
    """Readiness probe, reporting whether a promotion is in flight."""
    active = promotion_service.active
    return {
        "status": "ready",
        "active_promotion": active.id if active else None,
        "pending_approvals": len(promotion_service.approval_gate.pending()),
    }
