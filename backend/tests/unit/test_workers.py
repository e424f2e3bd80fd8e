"""Unit tests for worker task helpers, tenant validation and log formatting"""

import json
import logging
import uuid

import pytest

from domain.results import ConcurrentOperationError, OperationResult
from observability.correlation import get_correlation_id, set_correlation_id
from observability.logging_config import CorrelationIDFilter, JSONFormatter
from workers.base import result_payload, task_container, validate_tenant_id
from workers.sync_worker import retry_sync_job_task, sync_retry_due_task


class TestValidateTenantId:
    def test_valid_tenant(self, tenant_id, store):
        assert validate_tenant_id(str(tenant_id)) == tenant_id

    def test_invalid_format(self, db_session):
        with pytest.raises(ValueError, match="Invalid tenant_id format"):
            validate_tenant_id("not-a-uuid")

    def test_tenant_without_stores(self, db_session):
        with pytest.raises(ValueError, match="has no stores"):
            validate_tenant_id(str(uuid.uuid4()))


class TestBaseTask:
    def test_tenant_id_required(self, db_session):
        with pytest.raises(ValueError, match="tenant_id parameter is required"):
            retry_sync_job_task(job_id=str(uuid.uuid4()))

    def test_unknown_tenant_rejected(self, db_session):
        with pytest.raises(ValueError):
            retry_sync_job_task(job_id=str(uuid.uuid4()), tenant_id=str(uuid.uuid4()))


class TestResultPayload:
    def test_success_with_entity(self, container, tenant_id, store, time_range):
        result = container.sync.start_sync(tenant_id, store.id, time_range)

        payload = result_payload(result, extra_field=1)

        assert payload["success"] is True
        assert payload["value"]["status"] == "COMPLETED"
        assert payload["extra_field"] == 1
        assert "error" not in payload
        json.dumps(payload)

    def test_failure(self):
        error = ConcurrentOperationError("already running", detail={"sync_job_id": "j-1"}).to_error()

        payload = result_payload(OperationResult.fail(error))

        assert payload == {
            "success": False,
            "error": {
                "kind": "PRECONDITION",
                "code": "CONCURRENT_OPERATION",
                "message": "already running",
                "detail": {"sync_job_id": "j-1"},
            },
        }


class TestSweeps:
    def test_task_container_scopes_tenant(self, db_session, tenant_id):
        with task_container(tenant_id) as container:
            assert container.session.info["tenant_id"] == tenant_id

    def test_sync_retry_sweep_with_nothing_due(self, db_session):
        assert sync_retry_due_task.run() == {"SYNC": 0}


class TestLogging:
    def _record(self, **extra):
        record = logging.LogRecord("sync.orchestrator", logging.INFO, __file__, 10, "Sync job completed", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_extra(self):
        set_correlation_id("task-123")
        record = self._record(tenant_id="t-1", created_count=3)
        CorrelationIDFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Sync job completed"
        assert data["level"] == "INFO"
        assert data["correlation_id"] == "task-123"
        assert data["tenant_id"] == "t-1"
        assert data["created_count"] == 3

    def test_json_formatter_serializes_unknown_types(self):
        job_id = uuid.uuid4()

        data = json.loads(JSONFormatter().format(self._record(sync_job_id=job_id)))

        assert data["sync_job_id"] == str(job_id)

    def test_generated_correlation_id(self):
        correlation_id = set_correlation_id()

        assert get_correlation_id() == correlation_id
        assert uuid.UUID(correlation_id)
