"""
Tests for the blob storage providers.
"""
from datetime import datetime, timezone

import pytest

from payroll_hub.services.errors import ErrorCode, WorkflowError
from payroll_hub.services.storage import (
    BlobStorage, InMemoryStorage, LocalFileSystemStorage, create_storage, sha256_hex,
)

DOCUMENT = {
    "document_id": "BULLETIN_PAIE_EMP001_2024_01_1",
    "document_type": "BULLETIN_PAIE",
    "employee_id": "EMP001",
    "period_year": 2024,
    "period_month": 1,
}
PAYLOAD = b"%PDF-1.4\n" + b"x" * 2000


class TestPathLayout:

    def test_year_month_employee_layout(self):
        now = datetime(2024, 2, 5, tzinfo=timezone.utc)
        path = BlobStorage.build_path(DOCUMENT, now)
        assert path == (
            f"2024/01/EMP001/bulletin_paie-{DOCUMENT['document_id']}-{int(now.timestamp() * 1000)}.pdf"
        )


class TestLocalFileSystemStorage:

    @pytest.mark.asyncio
    async def test_store_and_retrieve(self, tmp_path):
        storage = LocalFileSystemStorage(str(tmp_path))

        stored = await storage.store(DOCUMENT, PAYLOAD)

        assert stored.size == len(PAYLOAD)
        assert stored.checksum == sha256_hex(PAYLOAD)
        assert stored.provider == "LOCAL_FILESYSTEM"
        assert (tmp_path / stored.path).read_bytes() == PAYLOAD
        assert not list(tmp_path.rglob("*.tmp"))
        assert await storage.retrieve(stored.path, stored.checksum) == PAYLOAD
        assert await storage.exists(stored.path)

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, tmp_path):
        storage = LocalFileSystemStorage(str(tmp_path))
        stored = await storage.store(DOCUMENT, PAYLOAD)
        (tmp_path / stored.path).write_bytes(PAYLOAD + b"tampered")

        with pytest.raises(WorkflowError) as exc:
            await storage.retrieve(stored.path, stored.checksum)
        assert exc.value.code == ErrorCode.STORAGE_READ_FAILED

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        storage = LocalFileSystemStorage(str(tmp_path))
        with pytest.raises(WorkflowError) as exc:
            await storage.retrieve("2024/01/EMP001/nope.pdf")
        assert exc.value.code == ErrorCode.STORAGE_READ_FAILED
        assert await storage.delete("2024/01/EMP001/nope.pdf") is False
        assert (await storage.get_metrics())["error_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_paths_cannot_escape_the_root(self, tmp_path):
        storage = LocalFileSystemStorage(str(tmp_path / "root"))
        with pytest.raises(WorkflowError) as exc:
            await storage.retrieve("../../etc/passwd")
        assert exc.value.code == ErrorCode.STORAGE_PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_upload_checks(self, tmp_path):
        storage = LocalFileSystemStorage(str(tmp_path), max_file_size=100)
        with pytest.raises(WorkflowError) as exc:
            await storage.store(DOCUMENT, PAYLOAD)
        assert exc.value.code == ErrorCode.STORAGE_SPACE_INSUFFICIENT

        with pytest.raises(WorkflowError) as exc:
            await storage.store(DOCUMENT, b"%PDF", mime_type="text/html")
        assert exc.value.code == ErrorCode.STORAGE_WRITE_FAILED

    @pytest.mark.asyncio
    async def test_metrics(self, tmp_path):
        storage = LocalFileSystemStorage(str(tmp_path))
        old = await storage.store(DOCUMENT, PAYLOAD)
        await storage.store(dict(DOCUMENT, document_id="OTHER"), PAYLOAD)

        metrics = await storage.get_metrics()
        assert metrics["total_files"] == 2
        assert metrics["total_size"] == 2 * len(PAYLOAD)
        assert 0.0 <= metrics["storage_utilization"] <= 1.0

        assert await storage.delete(old.path) is True
        assert not await storage.exists(old.path)
        assert (await storage.get_metrics())["total_files"] == 1

    @pytest.mark.asyncio
    async def test_health_check_leaves_no_file_behind(self, tmp_path):
        storage = LocalFileSystemStorage(str(tmp_path))
        health = await storage.health_check()
        assert health["healthy"] is True
        assert health["provider"] == "LOCAL_FILESYSTEM"
        assert (await storage.get_metrics())["total_files"] == 0


class TestInMemoryStorage:

    @pytest.mark.asyncio
    async def test_utilization_against_capacity(self):
        storage = InMemoryStorage(capacity=len(PAYLOAD) * 4)
        stored = await storage.store(DOCUMENT, PAYLOAD)
        metrics = await storage.get_metrics()
        assert metrics["storage_utilization"] == 0.25
        assert await storage.delete(stored.path) is True
        assert (await storage.get_metrics())["total_files"] == 0


    @pytest.mark.asyncio
    async def test_health_check(self):
        assert (await InMemoryStorage().health_check())["healthy"] is True


class TestCreateStorage:

    def test_known_providers(self, tmp_path):
        assert isinstance(create_storage("MEMORY", ""), InMemoryStorage)
        assert isinstance(create_storage("LOCAL_FILESYSTEM", str(tmp_path)), LocalFileSystemStorage)

    def test_unknown_provider(self):
        with pytest.raises(WorkflowError) as exc:
            create_storage("AWS_S3", "")
        assert exc.value.code == ErrorCode.CONFIGURATION_ERROR
