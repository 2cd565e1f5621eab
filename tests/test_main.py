import json
import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from growthdesk.core.exceptions import EmailDeliveryError, NoPayableCommissionsError
from growthdesk.main import app, growthdesk_exception_handler


@pytest.fixture
def client():
    # No context manager: the lifespan (scheduler, table creation) stays off
    return TestClient(app)


def _request(path="/api/v1/payouts"):
    return Request({"type": "http", "method": "POST", "path": path, "headers": [], "query_string": b""})


class TestHealth:

    def test_health_checks_database(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == "connected"


class TestJobEndpoints:

    def test_status_lists_scheduled_jobs(self, client):
        response = client.get("/api/v1/jobs/status")

        assert response.status_code == 200
        assert isinstance(response.json()["jobs"], list)

    def test_jobs_cannot_be_triggered_over_http(self, client):
        response = client.post("/api/v1/jobs/process_scheduled_payouts/run")

        assert response.status_code in (404, 405)


class TestErrorHandler:

    async def test_maps_error_to_status_and_body(self):
        affiliate_id = uuid.uuid4()

        response = await growthdesk_exception_handler(_request(), NoPayableCommissionsError(affiliate_id))

        assert response.status_code == 422
        assert json.loads(response.body) == {
            "error": "NO_PAYABLE_COMMISSIONS",
            "message": f"Affiliate {affiliate_id} has no payable commissions",
            "details": {"affiliate_id": str(affiliate_id)},
        }

    async def test_upstream_failures_are_5xx(self):
        response = await growthdesk_exception_handler(_request(), EmailDeliveryError("SMTP error: 421"))

        assert response.status_code == 502
        assert json.loads(response.body)["error"] == "EMAIL_DELIVERY_FAILED"
