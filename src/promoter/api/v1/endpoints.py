"""Promotion and approval endpoints."""
from fastapi import APIRouter, HTTPException, status
from loguru import logger

from src.promoter.deployment.coordinator import BuildInfo
from src.promoter.models.schemas import (
    ApprovalCancelRequest,
    ApprovalDecisionRequest,
    ApprovalListResponse,
    ApprovalView,
    PromotionRequest,
    PromotionStatusResponse,
)
from src.promoter.services.promotion_service import (
    PromotionInProgress,
    PromotionRun,
    promotion_service,
)

router = APIRouter()


def _status(run: PromotionRun) -> PromotionStatusResponse:
    return PromotionStatusResponse(
        id=run.id,
        status=run.status,
        result=run.result.to_dict() if run.result else None,
        error=run.error,
    )


@router.post(
    "/promotions",
    response_model=PromotionStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_promotion(body: PromotionRequest):
    """Start promoting a build; progress is polled via GET."""
    build = BuildInfo(
        image_tag=body.image_tag,
        image_digest=body.image_digest,
        git_tag=body.git_tag,
        upstream_status=body.upstream_status,
        change_summary=body.change_summary,
    )
    try:
        run = promotion_service.start(build)
    except PromotionInProgress as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _status(run)


@router.get("/promotions/{run_id}", response_model=PromotionStatusResponse)
async def get_promotion(run_id: str):
    try:
        run = promotion_service.get(run_id)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown promotion")
    return _status(run)


@router.get("/approvals", response_model=ApprovalListResponse)
async def list_approvals():
    gate = promotion_service.approval_gate
    return ApprovalListResponse(
        approvals=[
            ApprovalView(
                id=request.id,
                message=request.message,
                fields=request.fields,
                created_at=request.created_at,
            )
            for request in gate.pending()
        ]
    )


@router.post("/approvals/{request_id}")
async def approve(request_id: str, body: ApprovalDecisionRequest):
    """Fill in the requested fields and release the waiting promotion."""
    gate = promotion_service.approval_gate
    try:
        filled = gate.resolve(request_id, body.fields)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown approval")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    logger.bind(fields=filled).info(f"Approval {request_id} resolved via API")
    return {"id": request_id, "status": "approved", "fields": filled}


@router.post("/approvals/{request_id}/cancel")
async def cancel(request_id: str, body: ApprovalCancelRequest):
    gate = promotion_service.approval_gate
    try:
        gate.cancel(request_id, body.reason)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown approval")
    return {"id": request_id, "status": "cancelled"}
