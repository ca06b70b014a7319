"""
Payroll Document Hub - Batch Router

Start, poll, list and cancel batch operations.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..services.batch import BatchOrchestrator
from ..services.errors import WorkflowError
from .dependencies import Actor, get_current_actor, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payroll/documents", tags=["payroll-batch"])

# Set by the main app
orchestrator: Optional[BatchOrchestrator] = None


def set_dependencies(batch_orchestrator: BatchOrchestrator):
    global orchestrator
    orchestrator = batch_orchestrator


# ==================== MODELS ====================

class BatchOperationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation_type: str
    criteria: Dict[str, Any] = Field(default_factory=dict)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    run_async: bool = Field(False, alias="async")


# ==================== ENDPOINTS ====================

@router.post("/batch")
async def start_batch_operation(body: BatchOperationRequest, actor: Actor = Depends(get_current_actor)):
    """
    Run an operation over the documents matching `criteria`.

    Synchronous calls return the finished operation; `async: true` returns
    202 right away and the operation is polled via GET /batch/{operation_id}.
    """
    try:
        operation = await orchestrator.run(
            body.operation_type,
            body.criteria,
            body.parameters,
            actor_id=actor.user_id,
            run_async=body.run_async,
        )
    except WorkflowError as e:
        raise http_error(e)

    handle = {
        "operation_id": operation.operation_id,
        "status": operation.status.value,
        "total_documents": operation.total_documents,
        "estimated_duration_seconds": orchestrator.estimate_duration(
            operation.operation_type, operation.total_documents
        ),
        "operation": operation.to_dict(),
    }
    return JSONResponse(status_code=202 if body.run_async else 200, content=handle)


@router.get("/batch")
async def list_batch_operations(
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
):
    """Recent operations; administrators see everyone's."""
    try:
        return await orchestrator.list_operations(None if actor.is_admin else actor.user_id, limit)
    except WorkflowError as e:
        raise http_error(e)


@router.get("/batch/{operation_id}")
async def get_batch_operation(operation_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        operation = await orchestrator.get_operation(operation_id)
    except WorkflowError as e:
        raise http_error(e)
    return operation.to_dict()


@router.delete("/batch/{operation_id}")
async def cancel_batch_operation(operation_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        return await orchestrator.cancel_operation(operation_id, actor.user_id)
    except WorkflowError as e:
        raise http_error(e)
