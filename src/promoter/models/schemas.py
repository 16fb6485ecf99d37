from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PromotionRequest(BaseModel):
    image_tag: str = Field(..., description="Image tag built by the pipeline")
    image_digest: str = Field(default="", description="Immutable digest of the image")
    git_tag: Optional[str] = Field(default=None, description="Release tag, enables prod")
    upstream_status: str = Field(default="success", description="Result of the upstream pipeline")
    change_summary: str = Field(default="", description="Default change summary / changelog")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "image_tag": "1.4.2",
                "image_digest": "sha256:3f1c...",
                "git_tag": "v1.4.2",
                "upstream_status": "success",
                "change_summary": "Fix checkout latency",
            }
        }
    )


class PromotionStatusResponse(BaseModel):
    id: str
    status: str  # running, succeeded, failed, error
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ApprovalView(BaseModel):
    id: str
    message: str
    fields: Dict[str, Optional[str]]
    created_at: datetime


class ApprovalListResponse(BaseModel):
    approvals: List[ApprovalView]


class ApprovalDecisionRequest(BaseModel):
    fields: Dict[str, str] = Field(default_factory=dict, description="Values for the requested fields")


class ApprovalCancelRequest(BaseModel):
    reason: str = "cancelled"
