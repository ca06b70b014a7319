"""
Payroll Document Hub - Document Library

Read, download and delete access to stored payroll documents, plus the
retention sweep that retires documents older than the retention window.

Deletion is always soft: the record stays in the store with is_deleted set.
When the deleted document was the latest of its lineage, the newest
surviving ancestor becomes latest again so a lineage never loses its head.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, Optional

from dateutil.parser import isoparse

from ..config import DEPENDENCY_TIMEOUT_SECONDS, STORAGE_RETENTION_DAYS
from .errors import ErrorCode, ErrorContext, WorkflowError, document_not_found, guarded_call
from .models import PreviewInfo
from .repository import Repository
from .storage import BlobStorage

logger = logging.getLogger(__name__)


async def soft_delete_document(
    documents: Repository,
    document: Dict[str, Any],
    deleted_by: str,
    now: str,
    timeout_seconds: float = DEPENDENCY_TIMEOUT_SECONDS,
    context: Optional[ErrorContext] = None,
) -> Dict[str, Any]:
    """
    Mark a document deleted and hand "latest" back to its lineage.

    The parent_document chain is walked from newest to oldest; the first
    ancestor that is not deleted is flagged is_latest_version again.

    Returns {"document": <updated record>, "restored_latest": <id or None>}.
    """
    document_id = document["document_id"]
    updated = await guarded_call("soft_delete_document", documents.update(document_id, {
        "is_deleted": True,
        "deleted_by": deleted_by,
        "deleted_at": now,
        "is_latest_version": False,
    }), timeout_seconds, context)
    if updated is None:
        raise document_not_found(document_id, context)

    restored = None
    if document.get("is_latest_version", True):
        seen = {document_id}
        parent_id = document.get("parent_document")
        while parent_id and parent_id not in seen:
            seen.add(parent_id)
            parent = await guarded_call("load_document", documents.get(parent_id), timeout_seconds, context)
            if parent is None:
                break
            if not parent.get("is_deleted"):
                await guarded_call("restore_latest", documents.update(parent_id, {
                    "is_latest_version": True,
                    "updated_at": now,
                }), timeout_seconds, context)
                restored = parent_id
                break
            parent_id = parent.get("parent_document")

    if restored:
        logger.info("Document %s deleted by %s, %s is latest again", document_id, deleted_by, restored)
    else:
        logger.info("Document %s deleted by %s", document_id, deleted_by)
    return {"document": updated, "restored_latest": restored}


def download_filename(document: Dict[str, Any]) -> str:
    """BULLETIN_PAIE_Fatima_Zahra_Alaoui_Janvier_2024.pdf"""
    name = document.get("employee_name") or document.get("employee_id") or "document"
    period = document.get("period_label") or "-".join(
        str(part) for part in (document.get("period_month"), document.get("period_year")) if part
    )
    raw = f"{document.get('document_type', 'DOCUMENT')}_{name}_{period}"
    return re.sub(r'[\s"\\/]+', "_", raw) + ".pdf"


@dataclass
class DocumentDownload:
    """Bytes of a stored document plus the headers the HTTP layer needs."""
    document_id: str
    content: bytes
    filename: str
    media_type: str
    updated_at: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


class DocumentLibrary:
    """Listing, lookup, download and deletion of payroll documents."""

    def __init__(
        self,
        documents: Repository,
        storage: BlobStorage,
        timeout_seconds: float = DEPENDENCY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.documents = documents
        self.storage = storage
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    async def _call(self, operation: str, awaitable, context: ErrorContext, wrap=None):
        kwargs = {"wrap": wrap} if wrap else {}
        return await guarded_call(operation, awaitable, self.timeout_seconds, context, **kwargs)

    async def _load(self, document_id: str, context: ErrorContext) -> Dict[str, Any]:
        document = await self._call("load_document", self.documents.get(document_id), context)
        if document is None or document.get("is_deleted"):
            raise document_not_found(document_id, context)
        return document

    # ------------------------------------------------------------------ reads

    async def list_documents(
        self,
        search: Optional[str] = None,
        document_type: Optional[str] = None,
        employee_id: Optional[str] = None,
        period_year: Optional[int] = None,
        period_month: Optional[int] = None,
        status: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        include_previews: bool = False,
        latest_only: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        """Paginated documents, newest first. Deleted documents are never listed."""
        query: Dict[str, Any] = {"is_deleted": {"$ne": True}}
        if not include_previews:
            query["is_preview"] = {"$ne": True}
        if latest_only:
            query["is_latest_version"] = True
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}}
                for field in ("employee_name", "employee_code", "document_id", "period_label")
            ]
        if document_type:
            query["document_type"] = document_type.upper()
        if employee_id:
            query["employee_id"] = employee_id
        if period_year is not None:
            query["period_year"] = period_year
        if period_month is not None:
            query["period_month"] = period_month
        if status:
            query["status"] = status.upper()
        if start_date or end_date:
            created: Dict[str, str] = {}
            if start_date:
                created["$gte"] = _utc_bound(start_date, "start_date")
            if end_date:
                created["$lte"] = _utc_bound(end_date, "end_date")
            query["created_at"] = created

        page = max(page, 1)
        context = ErrorContext(operation="list_documents")
        total = await self._call("count_documents", self.documents.count(query), context)
        documents = await self._call(
            "find_documents",
            self.documents.find(query, sort=[("created_at", -1)], skip=(page - 1) * page_size, limit=page_size),
            context,
        )
        return {
            "documents": documents,
            "total": total,
            "page": page,
            "page_size": page_size,
            "pages": (total + page_size - 1) // page_size if page_size else 0,
        }

    async def get_document(self, document_id: str) -> Dict[str, Any]:
        context = ErrorContext(operation="get_document", document_id=document_id)
        return await self._load(document_id, context)

    async def download(self, document_id: str, actor_id: Optional[str] = None) -> DocumentDownload:
        """Read the stored file (checksum-verified) and count the download."""
        context = ErrorContext(operation="download_document", document_id=document_id, user_id=actor_id)
        document = await self._load(document_id, context)
        file_info = document.get("file_info") or {}
        if not file_info.get("path"):
            raise WorkflowError(
                ErrorCode.STORAGE_READ_FAILED,
                f"No stored file for {document_id}",
                details={"document_id": document_id, "status": document.get("status")},
                context=context,
            )

        now = self._clock()
        updates: Dict[str, Any] = {
            "download_count": int(document.get("download_count") or 0) + 1,
            "last_downloaded_at": now.isoformat(),
        }
        if document.get("is_preview"):
            info = PreviewInfo.from_dict(document.get("preview_info"))
            if info.expires_at and isoparse(info.expires_at) <= now:
                raise WorkflowError(
                    ErrorCode.PREVIEW_EXPIRED,
                    f"Preview {document_id} expired at {info.expires_at}",
                    details={"document_id": document_id, "expires_at": info.expires_at},
                    context=context,
                )
            info.download_count += 1
            updates["preview_info"] = info.to_dict()

        content = await self._call(
            "retrieve_document",
            self.storage.retrieve(file_info["path"], file_info.get("checksum")),
            context,
        )
        await self._call("count_download", self.documents.update(document_id, updates), context)
        return DocumentDownload(
            document_id=document_id,
            content=content,
            filename=download_filename(document),
            media_type=file_info.get("mime_type") or "application/pdf",
            updated_at=document.get("updated_at"),
        )

    # ----------------------------------------------------------------- writes

    async def delete_document(self, document_id: str, actor_id: str) -> Dict[str, Any]:
        context = ErrorContext(operation="delete_document", document_id=document_id, user_id=actor_id)
        document = await self._load(document_id, context)
        outcome = await soft_delete_document(
            self.documents, document, actor_id, self._clock().isoformat(), self.timeout_seconds, context,
        )
        return {
            "success": True,
            "document_id": document_id,
            "restored_latest": outcome["restored_latest"],
            "message": "Document supprimé avec succès",
        }

    async def cleanup_expired_documents(self, retention_days: int = STORAGE_RETENTION_DAYS) -> Dict[str, Any]:
        """
        Retire every document created before the retention cutoff: delete its
        stored file, then soft-delete the record as "system".
        """
        now = self._clock()
        cutoff = (now - timedelta(days=retention_days)).isoformat()
        context = ErrorContext(operation="cleanup_expired_documents")
        # Oldest first so a lineage is retired from the bottom up
        expired = await self._call("find_expired_documents", self.documents.find(
            {"created_at": {"$lt": cutoff}, "is_deleted": {"$ne": True}},
            sort=[("created_at", 1)],
        ), context)

        deleted, freed, errors = 0, 0, []
        for document in expired:
            document_id = document["document_id"]
            try:
                file_info = document.get("file_info") or {}
                if file_info.get("path") and await self.storage.delete(file_info["path"]):
                    freed += int(file_info.get("size") or 0)
                # Re-read so a lineage restore earlier in the sweep is seen
                current = await self.documents.get(document_id) or document
                await soft_delete_document(self.documents, current, "system", now.isoformat(),
                                           self.timeout_seconds, context)
                deleted += 1
            except Exception as e:
                errors.append(f"{document_id}: {e}")
                logger.error("Failed to retire document %s: %s", document_id, str(e))

        logger.info("Retention cleanup (%d days): deleted=%d freed=%d errors=%d",
                    retention_days, deleted, freed, len(errors))
        return {"deleted_count": deleted, "freed_space": freed, "errors": errors}


def _utc_bound(value: str, field: str) -> str:
    try:
        parsed = isoparse(value)
    except (TypeError, ValueError):
        raise WorkflowError(ErrorCode.INVALID_SELECTION_CRITERIA, f"{field} is not an ISO date",
                            details={"field": field, "received": value})
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()
