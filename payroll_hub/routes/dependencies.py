"""
Payroll Document Hub - Route Dependencies

Actor resolution from a JWT bearer token and WorkflowError -> HTTP mapping
shared by every payroll router.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import jwt as pyjwt
from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from ..config import ADMIN_ROLE, JWT_ALGORITHM, JWT_SECRET
from ..services.errors import WorkflowError
from ..services.status_service import TransitionContext

logger = logging.getLogger(__name__)


class Actor(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: str = "user"
    session_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def create_token(user_id: str, role: str = "user", email: Optional[str] = None,
                 session_id: Optional[str] = None, ttl_seconds: int = 86400) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "sid": session_id,
        "exp": datetime.now(timezone.utc).timestamp() + ttl_seconds,
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_actor(token: str) -> Actor:
    try:
        payload = pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.PyJWTError as e:
        logger.info("Rejected bearer token: %s", str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return Actor(
        user_id=payload["sub"],
        email=payload.get("email"),
        role=payload.get("role") or "user",
        session_id=payload.get("sid"),
    )


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Authorization header must be 'Bearer <token>'")
    return token.strip()


async def get_current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    token = _bearer(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return decode_actor(token)


async def get_optional_actor(authorization: Optional[str] = Header(None)) -> Optional[Actor]:
    token = _bearer(authorization)
    return decode_actor(token) if token else None


async def require_administrator(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail=f"The {ADMIN_ROLE} role is required")
    return actor


def request_id_for(request: Request) -> str:
    return request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"


def transition_context(request: Request, actor: Actor, **fields) -> TransitionContext:
    """TransitionContext carrying who is calling and from where."""
    return TransitionContext(
        user_id=actor.user_id,
        session_id=actor.session_id,
        request_id=request_id_for(request),
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
        **fields,
    )


def http_error(error: WorkflowError) -> HTTPException:
    return HTTPException(status_code=error.http_status, detail=error.to_client_dict())
