"""
Payroll Document Hub - Generation Router

Final document generation, previews, and the state of queued generations.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..services.errors import WorkflowError
from ..services.generation import DocumentGenerationPipeline, GenerationRequest
from ..services.status_rules import ProcessingPriority
from .dependencies import Actor, get_current_actor, http_error, request_id_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payroll/documents", tags=["payroll-generation"])

# Set by the main app
pipeline: Optional[DocumentGenerationPipeline] = None


def set_dependencies(generation_pipeline: DocumentGenerationPipeline):
    global pipeline
    pipeline = generation_pipeline


# ==================== MODELS ====================

class GenerateDocumentRequest(BaseModel):
    employee_id: str
    document_type: str
    period_year: int
    period_month: Optional[int] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    payroll: Dict[str, Any] = Field(default_factory=dict)
    priority: ProcessingPriority = ProcessingPriority.NORMAL
    force_regenerate: bool = False
    approval_info: Optional[Dict[str, Any]] = None
    tags: List[str] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)
    branch_id: Optional[str] = None

    def to_generation_request(self, actor: Actor, request_id: str) -> GenerationRequest:
        return GenerationRequest(
            employee_id=self.employee_id,
            document_type=self.document_type,
            period_year=self.period_year,
            period_month=self.period_month,
            period_start=self.period_start,
            period_end=self.period_end,
            payroll=self.payroll,
            priority=self.priority,
            force_regenerate=self.force_regenerate,
            approval_info=self.approval_info,
            tags=self.tags,
            config=self.config,
            branch_id=self.branch_id,
            requested_by=actor.user_id,
            request_id=request_id,
        )


# ==================== GENERATION ====================

@router.post("/generate")
async def generate_document(body: GenerateDocumentRequest, request: Request,
                            actor: Actor = Depends(get_current_actor)):
    """Generate a final document. 201 when produced, 202 when queued."""
    result = await pipeline.generate(body.to_generation_request(actor, request_id_for(request)))
    if not result.success:
        raise http_error(result.error)
    return JSONResponse(status_code=202 if result.queued else 201, content=result.to_dict())


@router.get("/generate/{document_id}")
async def get_generation_status(document_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        return await pipeline.get_generation_status(document_id)
    except WorkflowError as e:
        raise http_error(e)


@router.delete("/generate/{document_id}")
async def cancel_generation(document_id: str, actor: Actor = Depends(get_current_actor)):
    """Cancel a generation that is still waiting in the queue."""
    try:
        return await pipeline.cancel_generation(document_id, actor.user_id)
    except WorkflowError as e:
        raise http_error(e)


# ==================== PREVIEW ====================

@router.post("/preview")
async def generate_preview(body: GenerateDocumentRequest, request: Request,
                           actor: Actor = Depends(get_current_actor)):
    """Watermarked preview. A still-valid preview for the same period is reused."""
    result = await pipeline.generate_preview(body.to_generation_request(actor, request_id_for(request)))
    if not result.success:
        raise http_error(result.error)
    return JSONResponse(status_code=200 if result.cached else 201, content=result.to_dict())


@router.get("/preview/{document_id}")
async def get_preview(document_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        return await pipeline.get_preview(document_id)
    except WorkflowError as e:
        raise http_error(e)
