"""Tests for the admin HTTP API."""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from admin_server import create_app, verify_secret
from errors import AmoApiError, AuthenticationError

HEADERS = {"X-API-Secret": "s3cret"}


@pytest.fixture
def services(settings, status_map):
    return SimpleNamespace(
        config=settings,
        status_map=status_map,
        amo=Mock(),
        tokens=Mock(),
        pipeline=Mock(),
        reconciler=Mock(),
    )


@pytest.fixture
def client(services):
    app = create_app(services)
    app.config["TESTING"] = True
    return app.test_client()


def test_verify_secret():
    assert verify_secret("abc", "abc") is True
    assert verify_secret("abd", "abc") is False
    assert verify_secret("", "") is False
    assert verify_secret(None, "abc") is False


def test_health_is_public(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "healthy"


class TestAuth:
    """Shared secret checks."""

    def test_missing_secret(self, client):
        assert client.get("/api/status-mappings").status_code == 403

    def test_wrong_secret(self, client):
        assert client.get("/api/status-mappings", headers={"X-API-Secret": "nope"}).status_code == 403

    def test_token_query_arg(self, client):
        assert client.get("/api/status-mappings?token=s3cret").status_code == 200

    def test_empty_configured_secret_rejects_everything(self, services):
        services.config.admin_secret = ""
        client = create_app(services).test_client()

        assert client.get("/api/status-mappings", headers={"X-API-Secret": ""}).status_code == 403


class TestStatusMappings:
    """Mapping CRUD endpoints."""

    def test_create_and_list(self, client):
        created = client.post("/api/status-mappings", headers=HEADERS, json={
            "kaspi_status": "completed", "amo_pipeline_id": "10", "amo_status_id": 555,
            "sort_order": 2,
        })

        assert created.status_code == 200
        body = created.get_json()["data"]
        assert body["kaspi_status"] == "COMPLETED"
        assert body["is_active"] is True

        listed = client.get("/api/status-mappings?kaspi_status=COMPLETED", headers=HEADERS)
        assert [m["amo_status_id"] for m in listed.get_json()["data"]] == [555]

    @pytest.mark.parametrize("payload", [
        {"amo_pipeline_id": 1, "amo_status_id": 2},
        {"kaspi_status": "NEW", "amo_pipeline_id": "x", "amo_status_id": 2},
        {"kaspi_status": "NEW", "amo_status_id": 2},
    ])
    def test_invalid_payload(self, client, payload):
        assert client.post("/api/status-mappings", headers=HEADERS, json=payload).status_code == 400

    def test_non_json_body(self, client):
        response = client.post("/api/status-mappings", headers=HEADERS, data="x",
                               content_type="text/plain")

        assert response.status_code == 400

    def test_toggle_delete_and_stats(self, client, status_map):
        mapping = status_map.upsert_mapping("NEW", 10, 20)
        url = f"/api/status-mappings/{mapping['id']}"

        assert client.post(f"{url}/deactivate", headers=HEADERS).get_json()["data"] == {"updated": True}
        stats = client.get("/api/status-mappings/stats", headers=HEADERS).get_json()["data"]
        assert stats == {"total": 1, "active": 0, "inactive": 1}

        assert client.post(f"{url}/explode", headers=HEADERS).status_code == 404
        assert client.delete(url, headers=HEADERS).get_json()["data"] == {"deleted": True}
        assert client.delete(url, headers=HEADERS).get_json()["data"] == {"deleted": False}

    def test_bad_pipeline_filter(self, client):
        response = client.get("/api/status-mappings?amo_pipeline_id=abc", headers=HEADERS)

        assert response.status_code == 400

    def test_kaspi_statuses(self, client, status_map):
        status_map.upsert_mapping("COMPLETED", 10, 30)

        response = client.get("/api/kaspi-statuses", headers=HEADERS)

        assert response.get_json()["data"] == ["COMPLETED"]


class TestPipelines:
    """Pipeline listing."""

    def test_lists_pipelines(self, client, services):
        services.amo.list_pipelines.return_value = [{"id": 1, "name": "Kaspi", "statuses": []}]

        response = client.get("/api/pipelines", headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json()["data"][0]["name"] == "Kaspi"

    def test_upstream_failure(self, client, services):
        services.amo.list_pipelines.side_effect = AmoApiError("HTTP 401", status_code=401)

        assert client.get("/api/pipelines", headers=HEADERS).status_code == 502


class TestCron:
    """Manual job triggers."""

    def test_new_orders(self, client, services):
        services.pipeline.run.return_value = {"total": 1, "success": 1}

        response = client.post("/cron?task=new", headers=HEADERS)

        assert response.get_json() == {"success": True, "task": "new", "data": {"total": 1, "success": 1}}
        services.reconciler.run.assert_not_called()

    def test_reconcile(self, client, services):
        services.reconciler.run.return_value = {"total": 0}

        assert client.post("/cron?task=reconcile", headers=HEADERS).status_code == 200
        services.reconciler.run.assert_called_once_with()

    def test_unknown_task(self, client):
        assert client.post("/cron?task=other", headers=HEADERS).status_code == 400

    def test_requires_secret(self, client, services):
        assert client.post("/cron?task=new").status_code == 403
        services.pipeline.run.assert_not_called()


class TestOAuthCallback:
    """Authorization code exchange."""

    def test_exchanges_code(self, client, services):
        response = client.get("/oauth/callback?code=abc")

        assert response.status_code == 200
        services.tokens.exchange_code.assert_called_once_with("abc")

    def test_missing_code(self, client):
        assert client.get("/oauth/callback").status_code == 400

    def test_exchange_failure(self, client, services):
        services.tokens.exchange_code.side_effect = AuthenticationError("HTTP 400")

        assert client.get("/oauth/callback?code=bad").status_code == 502
