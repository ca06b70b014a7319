"""
Payroll Document Hub - Document Blob Storage

Stores generated PDF bytes outside the document store. The engine only
depends on the BlobStorage interface; two providers ship with the hub:

- LocalFileSystemStorage: files under STORAGE_BASE_PATH, written atomically
  (temp file + rename) and laid out as
  {base}/{year}/{MM}/{employee_id}/{type}-{document_id}-{ts}.pdf
- InMemoryStorage: dict-backed, for tests and previews

Every stored file gets a sha256 checksum that is verified on read when the
caller provides the expected value.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import STORAGE_ALLOWED_MIME_TYPES, STORAGE_MAX_FILE_SIZE
from .errors import ErrorCode, WorkflowError, storage_write_failed
from .status_rules import StorageProviderType

logger = logging.getLogger(__name__)


@dataclass
class StoredFile:
    """File metadata written into document.file_info."""
    provider: str
    path: str
    size: int
    checksum: str
    mime_type: str
    stored_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class StorageMetrics:
    """Latency and error counters shared by providers."""

    def __init__(self):
        self.operations = 0
        self.errors = 0
        self.total_latency_ms = 0.0

    def record(self, started: float, failed: bool = False) -> None:
        self.operations += 1
        self.total_latency_ms += (time.perf_counter() - started) * 1000
        if failed:
            self.errors += 1

    @property
    def average_latency_ms(self) -> float:
        return round(self.total_latency_ms / self.operations, 2) if self.operations else 0.0

    @property
    def error_rate(self) -> float:
        return round(self.errors / self.operations, 4) if self.operations else 0.0


class BlobStorage(ABC):
    """Opaque byte store for generated documents."""

    provider: StorageProviderType

    def __init__(self, max_file_size: int = STORAGE_MAX_FILE_SIZE,
                 allowed_mime_types: Optional[List[str]] = None):
        self.max_file_size = max_file_size
        self.allowed_mime_types = allowed_mime_types or list(STORAGE_ALLOWED_MIME_TYPES)
        self.metrics = StorageMetrics()

    def _check_upload(self, data: bytes, mime_type: str, path_hint: str) -> None:
        if mime_type not in self.allowed_mime_types:
            raise storage_write_failed(path_hint, f"mime type {mime_type} not allowed")
        if len(data) > self.max_file_size:
            raise WorkflowError(
                ErrorCode.STORAGE_SPACE_INSUFFICIENT,
                f"File of {len(data)} bytes exceeds limit of {self.max_file_size}",
                details={"size": len(data), "max_size": self.max_file_size},
            )

    @staticmethod
    def build_path(document: Dict[str, Any], now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        year = document.get("period_year") or now.year
        month = document.get("period_month") or now.month
        doc_type = str(document.get("document_type", "document")).lower()
        return (
            f"{year}/{int(month):02d}/{document.get('employee_id', 'unknown')}/"
            f"{doc_type}-{document['document_id']}-{int(now.timestamp() * 1000)}.pdf"
        )

    @abstractmethod
    async def store(self, document: Dict[str, Any], data: bytes,
                    mime_type: str = "application/pdf") -> StoredFile:
        """Write bytes for a document and return the file metadata."""

    @abstractmethod
    async def retrieve(self, path: str, expected_checksum: Optional[str] = None) -> bytes:
        """Read bytes back, verifying the checksum when given."""

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Remove a file. Returns False when it did not exist."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    async def get_metrics(self) -> Dict[str, Any]:
        ...

    async def health_check(self) -> Dict[str, Any]:
        """Write, read back and delete a sample file."""
        sample = {
            "document_id": f"healthcheck_{int(time.time() * 1000)}",
            "document_type": "HEALTH",
            "employee_id": "_health",
        }
        payload = b"%PDF-health-check"
        started = time.perf_counter()
        stored = await self.store(sample, payload, mime_type="application/octet-stream")
        data = await self.retrieve(stored.path, stored.checksum)
        await self.delete(stored.path)
        return {
            "healthy": data == payload,
            "provider": self.provider.value,
            "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    @staticmethod
    def _verify(path: str, data: bytes, expected_checksum: Optional[str]) -> None:
        if expected_checksum and sha256_hex(data) != expected_checksum:
            raise WorkflowError(
                ErrorCode.STORAGE_READ_FAILED,
                f"Checksum mismatch for {path}",
                details={"path": path, "expected": expected_checksum},
            )


# =============================================================================
# LOCAL FILESYSTEM
# =============================================================================

class LocalFileSystemStorage(BlobStorage):
    """Stores files under a base directory."""

    provider = StorageProviderType.LOCAL_FILESYSTEM

    def __init__(self, base_path: str, **kwargs):
        super().__init__(**kwargs)
        self.base_path = Path(base_path)

    def _full_path(self, path: str) -> Path:
        full = (self.base_path / path).resolve()
        if self.base_path.resolve() not in full.parents:
            raise WorkflowError(
                ErrorCode.STORAGE_PERMISSION_DENIED,
                f"Path escapes storage root: {path}",
                details={"path": path},
            )
        return full

    def _write_atomic(self, full: Path, data: bytes) -> None:
        full.parent.mkdir(parents=True, exist_ok=True)
        tmp = full.with_name(full.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, full)

    async def store(self, document, data, mime_type="application/pdf"):
        relative = self.build_path(document)
        self._check_upload(data, mime_type, relative)
        started = time.perf_counter()
        try:
            full = self._full_path(relative)
            await asyncio.to_thread(self._write_atomic, full, data)
        except WorkflowError:
            self.metrics.record(started, failed=True)
            raise
        except OSError as e:
            self.metrics.record(started, failed=True)
            if isinstance(e, PermissionError):
                raise WorkflowError(ErrorCode.STORAGE_PERMISSION_DENIED, str(e),
                                    details={"path": relative}, cause=e)
            raise storage_write_failed(relative, str(e), cause=e)
        self.metrics.record(started)
        logger.info("Stored %s (%d bytes)", relative, len(data))
        return StoredFile(
            provider=self.provider.value,
            path=relative,
            size=len(data),
            checksum=sha256_hex(data),
            mime_type=mime_type,
            stored_at=datetime.now(timezone.utc).isoformat(),
        )

    async def retrieve(self, path, expected_checksum=None):
        started = time.perf_counter()
        try:
            data = await asyncio.to_thread(self._full_path(path).read_bytes)
        except OSError as e:
            self.metrics.record(started, failed=True)
            raise WorkflowError(ErrorCode.STORAGE_READ_FAILED, f"Failed to read {path}: {e}",
                                details={"path": path}, cause=e)
        self.metrics.record(started)
        self._verify(path, data, expected_checksum)
        return data

    async def delete(self, path):
        full = self._full_path(path)
        try:
            await asyncio.to_thread(full.unlink)
        except FileNotFoundError:
            return False
        return True

    async def exists(self, path):
        return await asyncio.to_thread(self._full_path(path).exists)

    def _scan(self) -> List[Path]:
        if not self.base_path.exists():
            return []
        return [p for p in self.base_path.rglob("*.pdf") if p.is_file()]

    async def get_metrics(self):
        files = await asyncio.to_thread(self._scan)
        total_size = sum(p.stat().st_size for p in files)
        utilization = 0.0
        if self.base_path.exists():
            usage = shutil.disk_usage(self.base_path)
            utilization = round(usage.used / usage.total, 4) if usage.total else 0.0
        return {
            "provider": self.provider.value,
            "total_files": len(files),
            "total_size": total_size,
            "avg_file_size": round(total_size / len(files), 2) if files else 0,
            "storage_utilization": utilization,
            "operation_latency_ms": self.metrics.average_latency_ms,
            "error_rate": self.metrics.error_rate,
        }


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryStorage(BlobStorage):
    """Dict-backed provider."""

    provider = StorageProviderType.MEMORY

    def __init__(self, capacity: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        self.capacity = capacity
        self._files: Dict[str, Dict[str, Any]] = {}

    async def store(self, document, data, mime_type="application/pdf"):
        relative = self.build_path(document)
        self._check_upload(data, mime_type, relative)
        started = time.perf_counter()
        self._files[relative] = {"data": bytes(data), "stored_at": datetime.now(timezone.utc)}
        self.metrics.record(started)
        return StoredFile(
            provider=self.provider.value,
            path=relative,
            size=len(data),
            checksum=sha256_hex(data),
            mime_type=mime_type,
            stored_at=self._files[relative]["stored_at"].isoformat(),
        )

    async def retrieve(self, path, expected_checksum=None):
        started = time.perf_counter()
        entry = self._files.get(path)
        if entry is None:
            self.metrics.record(started, failed=True)
            raise WorkflowError(ErrorCode.STORAGE_READ_FAILED, f"File not found: {path}",
                                details={"path": path})
        self.metrics.record(started)
        self._verify(path, entry["data"], expected_checksum)
        return entry["data"]

    async def delete(self, path):
        return self._files.pop(path, None) is not None

    async def exists(self, path):
        return path in self._files

    async def get_metrics(self):
        total_size = sum(len(f["data"]) for f in self._files.values())
        count = len(self._files)
        return {
            "provider": self.provider.value,
            "total_files": count,
            "total_size": total_size,
            "avg_file_size": round(total_size / count, 2) if count else 0,
            "storage_utilization": round(total_size / self.capacity, 4) if self.capacity else 0.0,
            "operation_latency_ms": self.metrics.average_latency_ms,
            "error_rate": self.metrics.error_rate,
        }


def create_storage(provider: str, base_path: str) -> BlobStorage:
    """Build the configured storage provider."""
    if provider == StorageProviderType.LOCAL_FILESYSTEM.value:
        return LocalFileSystemStorage(base_path)
    if provider == StorageProviderType.MEMORY.value:
        return InMemoryStorage()
    raise WorkflowError(
        ErrorCode.CONFIGURATION_ERROR,
        f"Unsupported storage provider: {provider}",
        details={"provider": provider,
                 "supported": [StorageProviderType.LOCAL_FILESYSTEM.value, StorageProviderType.MEMORY.value]},
    )
