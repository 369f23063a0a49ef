"""
Tests for request logging
"""

import json
import logging

from tenant_manager.middleware.logging import JsonLogFormatter, RequestContextFilter, current_request_id
from tenant_manager.services.api_key_service import APIKeyService


class TestJsonLogFormatter:
    def test_formats_context_fields(self):
        record = logging.LogRecord("tenant_manager.access", logging.INFO, __file__, 1, "GET %s", ("/tenant-info",), None)
        record.tenant_id = 3
        record.status_code = 200
        token = current_request_id.set("req-42")
        try:
            RequestContextFilter().filter(record)
        finally:
            current_request_id.reset(token)

        entry = json.loads(JsonLogFormatter().format(record))

        assert entry["message"] == "GET /tenant-info"
        assert entry["request_id"] == "req-42"
        assert entry["tenant_id"] == 3
        assert entry["status_code"] == 200
        assert "auth_scheme" not in entry


class TestStructuredLoggingMiddleware:
    """Test the access log and request ids"""

    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"

    async def test_request_id_is_generated(self, client):
        response = await client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 32

    async def test_access_line_carries_tenant(self, client, caplog, make_tenant, test_db):
        tenant = await make_tenant("acme01", provision=True)
        created = await APIKeyService(test_db).generate(tenant.id, "dashboard")

        with caplog.at_level(logging.INFO, logger="tenant_manager.access"):
            await client.get(
                "/tenant-info", params={"tenant_id": tenant.id}, headers={"Authorization": f"ApiKey {created['key']}"}
            )

        access = [r for r in caplog.records if r.name == "tenant_manager.access"]
        assert access[-1].tenant_id == tenant.id
        assert access[-1].auth_scheme == "api_key"
        assert access[-1].status_code == 200
