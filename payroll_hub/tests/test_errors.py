"""
Tests for the structured error model, the global error handler and alerts.
"""
import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from payroll_hub.services.alerts import AlertNotifier
from payroll_hub.services.error_handler import ErrorHandler
from payroll_hub.services.errors import (
    ERROR_CLASSIFICATION, ErrorCategory, ErrorCode, ErrorContext, ErrorSeverity, RecoveryAction,
    RecoveryStrategy, WorkflowError, from_exception, guarded_call, invalid_status_transition,
)


class TestErrorClassification:
    """Severity, category, retryability and HTTP status come from the code."""

    def test_every_code_is_classified(self):
        assert set(ERROR_CLASSIFICATION) == set(ErrorCode)

    def test_derived_properties(self):
        error = WorkflowError(ErrorCode.DATABASE_CONNECTION_FAILED, "connection refused")
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.category == ErrorCategory.SYSTEM
        assert error.retryable is True
        assert error.http_status == 503

    @pytest.mark.parametrize("code,status", [
        (ErrorCode.INVALID_PAYROLL_DATA, 400),
        (ErrorCode.UNAUTHORIZED_STATUS_CHANGE, 403),
        (ErrorCode.DOCUMENT_NOT_FOUND, 404),
        (ErrorCode.DOCUMENT_ALREADY_EXISTS, 409),
        (ErrorCode.INVALID_STATUS_TRANSITION, 422),
        (ErrorCode.TIMEOUT_EXCEEDED, 504),
        (ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE, 503),
        (ErrorCode.INTERNAL_ERROR, 500),
    ])
    def test_http_status_mapping(self, code, status):
        assert WorkflowError(code, "x").http_status == status

    def test_security_errors_are_never_retryable(self):
        for code, (_, category, retryable, _) in ERROR_CLASSIFICATION.items():
            if category == ErrorCategory.SECURITY:
                assert retryable is False, code

    def test_user_message_is_localized(self):
        error = WorkflowError(ErrorCode.DOCUMENT_NOT_FOUND, "Document X not found")
        assert error.user_message == "Document introuvable."


class TestClientSanitization:
    """Internal detail of system/security/performance errors never reaches callers."""

    def test_system_error_is_sanitized(self):
        error = WorkflowError(
            ErrorCode.DATABASE_CONNECTION_FAILED,
            "mongodb://admin:secret@db:27017 refused",
            details={"host": "db"},
            context=ErrorContext(request_id="req-1"),
        )
        client = error.to_client_dict()
        assert set(client) == {"code", "message", "retryable", "request_id", "timestamp"}
        assert "secret" not in str(client)
        assert client["message"] == error.user_message
        assert client["request_id"] == "req-1"

    def test_business_error_keeps_details(self):
        error = invalid_status_transition("SENT", "GENERATED", ["ARCHIVED"])
        client = error.to_client_dict()
        assert client["details"]["allowed_transitions"] == ["ARCHIVED"]
        assert client["category"] == "BUSINESS_LOGIC"

    def test_request_id_falls_back_to_error_id(self):
        error = WorkflowError(ErrorCode.INTERNAL_ERROR, "boom")
        assert error.to_client_dict()["request_id"] == error.error_id

    def test_full_dict_has_recovery_actions(self):
        error = WorkflowError(ErrorCode.PDF_GENERATION_FAILED, "renderer crashed")
        data = error.to_dict()
        strategies = [a["strategy"] for a in data["recovery_actions"]]
        assert strategies == ["RETRY", "FALLBACK", "MANUAL_INTERVENTION"]


class TestFromException:
    """Foreign exceptions are wrapped; WorkflowErrors pass through."""

    def test_wraps_generic_exception(self):
        error = from_exception(ValueError("bad"), ErrorContext(operation="op"))
        assert error.code == ErrorCode.INTERNAL_ERROR
        assert error.details["exception_type"] == "ValueError"
        assert isinstance(error.cause, ValueError)

    def test_memory_error(self):
        assert from_exception(MemoryError()).code == ErrorCode.MEMORY_INSUFFICIENT

    def test_permission_error(self):
        assert from_exception(PermissionError("denied")).code == ErrorCode.STORAGE_PERMISSION_DENIED

    def test_workflow_error_passes_through_and_gains_context(self):
        original = WorkflowError(ErrorCode.DOCUMENT_NOT_FOUND, "missing")
        wrapped = from_exception(original, ErrorContext(document_id="DOC1", request_id="r1"))
        assert wrapped is original
        assert wrapped.context.document_id == "DOC1"
        assert wrapped.context.request_id == "r1"


class TestGuardedCall:
    """Dependency calls under a timeout."""

    @pytest.mark.asyncio
    async def test_returns_value(self):
        async def ok():
            return 42
        assert await guarded_call("op", ok(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(WorkflowError) as exc:
            await guarded_call("slow_op", asyncio.sleep(5), 0.01)
        assert exc.value.code == ErrorCode.TIMEOUT_EXCEEDED
        assert exc.value.details["operation"] == "slow_op"

    @pytest.mark.asyncio
    async def test_wraps_failures_as_database_errors(self):
        async def fail():
            raise ConnectionError("refused")
        with pytest.raises(WorkflowError) as exc:
            await guarded_call("load", fail(), 1.0)
        assert exc.value.code == ErrorCode.DATABASE_CONNECTION_FAILED
        assert isinstance(exc.value.cause, ConnectionError)

    @pytest.mark.asyncio
    async def test_workflow_errors_are_not_rewrapped(self):
        async def fail():
            raise WorkflowError(ErrorCode.DOCUMENT_NOT_FOUND, "missing")
        with pytest.raises(WorkflowError) as exc:
            await guarded_call("load", fail(), 1.0)
        assert exc.value.code == ErrorCode.DOCUMENT_NOT_FOUND


class TestErrorHandler:
    """Logging, metrics, alerts and recovery."""

    @pytest.mark.asyncio
    async def test_logs_at_severity_level(self, caplog):
        handler = ErrorHandler(AlertNotifier(webhook_url=None))
        with caplog.at_level(logging.DEBUG, logger="payroll_hub.services.error_handler"):
            await handler.handle(WorkflowError(ErrorCode.OPERATION_NOT_FOUND, "low"))
            await handler.handle(WorkflowError(ErrorCode.PDF_GENERATION_FAILED, "high"))
        levels = [r.levelno for r in caplog.records if r.name == "payroll_hub.services.error_handler"]
        assert levels == [logging.INFO, logging.ERROR]
        assert caplog.records[0].workflow_error["code"] == "OPERATION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_metrics_per_code(self):
        handler = ErrorHandler(AlertNotifier(webhook_url=None))
        for _ in range(3):
            await handler.handle(WorkflowError(ErrorCode.DOCUMENT_NOT_FOUND, "missing"))
        metrics = handler.get_error_metrics()
        assert metrics["total_errors"] == 3
        assert metrics["by_code"]["DOCUMENT_NOT_FOUND"]["count"] == 3
        assert metrics["recent_by_category"]["VALIDATION"] == 3

        handler.reset_metrics()
        assert handler.get_error_metrics()["total_errors"] == 0

    @pytest.mark.asyncio
    async def test_same_error_is_handled_once(self):
        notifier = AlertNotifier(webhook_url=None)
        handler = ErrorHandler(notifier)
        error = WorkflowError(ErrorCode.DATABASE_CONNECTION_FAILED, "down")

        await handler.handle(error)
        assert await handler.handle(error) is False

        assert error.handled is True
        assert handler.get_error_metrics()["total_errors"] == 1
        assert [a["type"] for a in notifier.recent()] == ["CRITICAL_ERROR"]

    @pytest.mark.asyncio
    async def test_critical_error_sends_alert(self):
        notifier = AlertNotifier(webhook_url=None)
        handler = ErrorHandler(notifier)
        hook = AsyncMock()
        handler.register_alert_hook(hook)

        await handler.handle(WorkflowError(ErrorCode.DATABASE_CONNECTION_FAILED, "down"))

        assert notifier.recent()[0]["type"] == "CRITICAL_ERROR"
        hook.assert_awaited_once()
        assert hook.await_args.args[0] == "CRITICAL_ERROR"

    @pytest.mark.asyncio
    async def test_error_spike_alert(self):
        notifier = AlertNotifier(webhook_url=None)
        handler = ErrorHandler(notifier, spike_threshold=2)
        for _ in range(3):
            await handler.handle(WorkflowError(ErrorCode.INVALID_PAYROLL_DATA, "bad"))
        spikes = [a for a in notifier.recent() if a["type"] == "ERROR_SPIKE"]
        assert len(spikes) == 1
        assert spikes[0]["data"]["category"] == "VALIDATION"

    @pytest.mark.asyncio
    async def test_automated_recovery(self):
        handler = ErrorHandler(AlertNotifier(webhook_url=None))
        failing = AsyncMock(side_effect=RuntimeError("still down"))
        succeeding = AsyncMock(return_value=True)
        error = WorkflowError(
            ErrorCode.STORAGE_WRITE_FAILED,
            "disk full",
            recovery_actions=[
                RecoveryAction(RecoveryStrategy.RETRY, "retry", automated=True, execute=failing),
                RecoveryAction(RecoveryStrategy.FALLBACK, "fallback", automated=True, execute=succeeding),
                RecoveryAction(RecoveryStrategy.MANUAL_INTERVENTION, "call ops"),
            ],
        )
        assert await handler.handle(error) is True
        failing.assert_awaited_once()
        succeeding.assert_awaited_once()
        assert handler.get_error_metrics()["by_code"]["STORAGE_WRITE_FAILED"]["successful_recoveries"] == 1

    @pytest.mark.asyncio
    async def test_no_automated_recovery(self):
        handler = ErrorHandler(AlertNotifier(webhook_url=None))
        assert await handler.handle(WorkflowError(ErrorCode.INVALID_PAYROLL_DATA, "bad")) is False


class TestAlertNotifier:
    """Webhook delivery is best-effort."""

    @pytest.mark.asyncio
    async def test_posts_to_webhook(self):
        notifier = AlertNotifier(webhook_url="https://alerts.example.test/hook")
        response = MagicMock()
        response.raise_for_status = MagicMock()
        client = MagicMock()
        client.post = AsyncMock(return_value=response)
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("payroll_hub.services.alerts.httpx.AsyncClient", return_value=client):
            alert = await notifier.send("HEALTH_CRITICAL", {"status": "critical"})

        client.post.assert_awaited_once()
        assert client.post.await_args.kwargs["json"]["type"] == "HEALTH_CRITICAL"
        assert alert["data"] == {"status": "critical"}

    @pytest.mark.asyncio
    async def test_webhook_failure_is_logged_not_raised(self):
        notifier = AlertNotifier(webhook_url="https://alerts.example.test/hook")
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("unreachable"))
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("payroll_hub.services.alerts.httpx.AsyncClient", return_value=client):
            alert = await notifier.send("CRITICAL_ERROR", {})

        assert notifier.recent(1) == [alert]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        notifier = AlertNotifier(webhook_url=None, history_size=2)
        for i in range(5):
            await notifier.send("TEST", {"i": i})
        assert [a["data"]["i"] for a in notifier.recent()] == [4, 3]
