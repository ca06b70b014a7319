"""
Payroll Document Hub - Document Router

Listing, lookup, download and soft deletion of payroll documents.
Mounted last: `/{document_id}` would otherwise capture `/batch` and `/health`.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from ..services.documents import DocumentLibrary
from ..services.errors import WorkflowError
from .dependencies import Actor, get_current_actor, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payroll/documents", tags=["payroll-documents"])

# Set by the main app
library: Optional[DocumentLibrary] = None


def set_dependencies(document_library: DocumentLibrary):
    global library
    library = document_library


@router.get("")
async def list_documents(
    search: Optional[str] = Query(None),
    document_type: Optional[str] = Query(None),
    employee_id: Optional[str] = Query(None),
    period_year: Optional[int] = Query(None),
    period_month: Optional[int] = Query(None, ge=1, le=12),
    status: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    include_previews: bool = Query(False),
    latest_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
):
    try:
        return await library.list_documents(
            search=search,
            document_type=document_type,
            employee_id=employee_id,
            period_year=period_year,
            period_month=period_month,
            status=status,
            start_date=start_date,
            end_date=end_date,
            include_previews=include_previews,
            latest_only=latest_only,
            page=page,
            page_size=page_size,
        )
    except WorkflowError as e:
        raise http_error(e)


@router.get("/{document_id}/download")
async def download_document(document_id: str, inline: bool = Query(False),
                            actor: Actor = Depends(get_current_actor)):
    """Stream the stored PDF. `inline=true` lets the browser display it instead of saving it."""
    try:
        download = await library.download(document_id, actor.user_id)
    except WorkflowError as e:
        raise http_error(e)

    disposition = "inline" if inline else "attachment"
    headers = {
        "Content-Disposition": f'{disposition}; filename="{download.filename}"',
        "Cache-Control": "private, max-age=3600",
    }
    if download.updated_at:
        headers["X-Document-Updated-At"] = download.updated_at
    return Response(content=download.content, media_type=download.media_type, headers=headers)


@router.get("/{document_id}")
async def get_document(document_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        return await library.get_document(document_id)
    except WorkflowError as e:
        raise http_error(e)


@router.delete("/{document_id}")
async def delete_document(document_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        return await library.delete_document(document_id, actor.user_id)
    except WorkflowError as e:
        raise http_error(e)
