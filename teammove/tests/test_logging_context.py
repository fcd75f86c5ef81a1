"""Tests for structured logging and request_id propagation."""

import json
import logging

from fastapi.testclient import TestClient

from teammove.core.logging import JsonFormatter, PrettyFormatter
from teammove.main import app


def test_request_id_in_response_and_logs(caplog):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="teammove"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_request_log_carries_tenant(caplog, tenant):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="teammove"):
        client.get("/api/billing/usage", headers={"X-Tenant-Id": "club_lyon"})
    completed = [r for r in caplog.records if r.getMessage() == "request.complete"]
    assert completed
    assert completed[-1].tenant_id == "club_lyon"


def test_request_id_in_error_response():
    client = TestClient(app)
    response = client.get("/api/billing/status", headers={"X-Tenant-Id": "nobody"})
    rid = response.headers.get("x-request-id")
    assert response.status_code == 404
    assert rid
    assert response.json()["error"]["request_id"] == rid


def test_json_formatter_includes_structured_fields():
    record = logging.LogRecord("teammove", logging.INFO, __file__, 1, "[quota] denied", None, None)
    record.request_id = "rid-1"
    record.tenant_id = "club_lyon"
    record.quota_kind = "events"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "[quota] denied"
    assert payload["tenant_id"] == "club_lyon"
    assert payload["quota_kind"] == "events"
    assert payload["request_id"] == "rid-1"


def test_pretty_formatter_shows_tenant():
    record = logging.LogRecord("teammove", logging.WARNING, __file__, 1, "[billing] retry", None, None)
    record.tenant_id = "club_lyon"
    line = PrettyFormatter().format(record)
    assert "[tenant=club_lyon]" in line
    assert "WARNING" in line
