"""
Payroll Document Hub - Status Router

Status transitions (single and batch), status queries and transition
statistics.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from ..services.errors import WorkflowError
from ..services.status_service import DocumentStatusService
from .dependencies import Actor, get_current_actor, http_error, transition_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payroll/documents", tags=["payroll-status"])

# Set by the main app
status_service: Optional[DocumentStatusService] = None


def set_dependencies(service: DocumentStatusService):
    global status_service
    status_service = service


# ==================== MODELS ====================

class StatusChangeRequest(BaseModel):
    target_status: str
    reason: Optional[str] = None
    comments: Optional[str] = None
    force: bool = False
    sent_to: Optional[List[str]] = None
    approval_comments: Optional[str] = None


class BatchStatusChangeRequest(BaseModel):
    document_ids: List[str]
    target_status: str
    reason: Optional[str] = None
    comments: Optional[str] = None
    force: bool = False


# ==================== QUERIES ====================

@router.get("/status/statistics")
async def get_transition_statistics(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    actor: Actor = Depends(get_current_actor),
):
    return await status_service.get_transition_statistics(start, end)


@router.get("/by-status/{status}")
async def get_documents_by_status(
    status: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
):
    try:
        return await status_service.get_documents_by_status(status, page, page_size)
    except WorkflowError as e:
        raise http_error(e)


# ==================== TRANSITIONS ====================

@router.post("/status/batch")
async def batch_status_change(body: BatchStatusChangeRequest, request: Request,
                              actor: Actor = Depends(get_current_actor)):
    """Transition several documents. Per-document failures are reported, not raised."""
    context = transition_context(request, actor, reason=body.reason, comments=body.comments, force=body.force)
    outcome = await status_service.batch_transition(body.document_ids, body.target_status, context)
    return {
        "total": outcome["total"],
        "successful": outcome["successful"],
        "failed": outcome["failed"],
        "results": [r.to_dict() for r in outcome["results"]],
    }


@router.put("/{document_id}/status")
async def change_status(document_id: str, body: StatusChangeRequest, request: Request,
                        actor: Actor = Depends(get_current_actor)):
    context = transition_context(
        request,
        actor,
        reason=body.reason,
        comments=body.comments,
        force=body.force,
        sent_to=body.sent_to,
        approval_comments=body.approval_comments,
    )
    result = await status_service.transition(document_id, body.target_status, context)
    if not result.success:
        raise http_error(result.error)
    return result.to_dict()


@router.get("/{document_id}/status")
async def get_document_status(
    document_id: str,
    include_history: bool = Query(False),
    history_limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
):
    try:
        return await status_service.get_document_status(document_id, include_history, history_limit)
    except WorkflowError as e:
        raise http_error(e)
