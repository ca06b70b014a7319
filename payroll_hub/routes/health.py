"""
Payroll Document Hub - Health Router

GET returns the composite health verdict (503 when critical).
POST runs an administrator maintenance action.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import ADMIN_ROLE
from ..services.errors import WorkflowError
from ..services.health import HealthReporter, http_status_for
from .dependencies import Actor, get_optional_actor, http_error, require_administrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payroll/documents", tags=["payroll-health"])

# Set by the main app
reporter: Optional[HealthReporter] = None


def set_dependencies(health_reporter: HealthReporter):
    global reporter
    reporter = health_reporter


class MaintenanceRequest(BaseModel):
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


@router.get("/health")
async def get_health(
    detailed: bool = Query(False),
    component: Optional[str] = Query(None),
    include_metrics: bool = Query(False),
    actor: Optional[Actor] = Depends(get_optional_actor),
):
    """Basic checks are public; detailed checks and metrics need an administrator."""
    if detailed or include_metrics:
        if actor is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        if not actor.is_admin:
            raise HTTPException(status_code=403, detail=f"The {ADMIN_ROLE} role is required")
    try:
        health = await reporter.check(detailed=detailed, component=component, include_metrics=include_metrics)
    except WorkflowError as e:
        raise http_error(e)
    return JSONResponse(status_code=http_status_for(health.status), content=health.to_dict())


@router.post("/health")
async def run_maintenance(body: MaintenanceRequest, actor: Actor = Depends(require_administrator)):
    try:
        return await reporter.run_maintenance(body.action, body.params, actor.user_id, actor.role)
    except WorkflowError as e:
        raise http_error(e)
