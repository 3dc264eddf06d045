"""
Tests for the HTTP surface: integrations, webhooks and skills routers.

The app runs against an in-memory container whose GitHub adapter serves
scripted pages, so no provider or database is touched.
"""
from urllib.parse import parse_qs, urlparse
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from skillsync.schemas.integration import Provider
from tests.utils.fakes import ScriptedAdapter, build_pages, webhook_request


API = "/api/v1"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def api_container():
    from skillsync.services.container import build_memory_container
    return build_memory_container({Provider.GITHUB: ScriptedAdapter(build_pages(2, 1))})


@pytest.fixture
def client(api_container):
    from skillsync.main import app

    app.state.container = api_container
    try:
        with TestClient(app, raise_server_exceptions=False) as test_client:
            yield test_client
    finally:
        app.state.container = None


def _connect(client, owner_id="emp-1", code="abc"):
    authorize = client.get(f"{API}/integrations/oauth/github/authorize", params={"owner_id": owner_id})
    assert authorize.status_code == 200
    state = authorize.json()["state"]
    return client.get(f"{API}/integrations/oauth/github/callback", params={"code": code, "state": state})


# =============================================================================
# Providers and OAuth
# =============================================================================

class TestProvidersAndOAuth:

    def test_list_providers(self, client):
        response = client.get(f"{API}/integrations/providers")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["providers"][0]["provider"] == "github"
        assert data["providers"][0]["oauth_configured"] is True
        assert len(response.headers["x-request-id"]) == 12

    def test_authorize_returns_consent_url_with_state(self, client):
        response = client.get(f"{API}/integrations/oauth/github/authorize", params={"owner_id": "emp-1"})

        assert response.status_code == 200
        data = response.json()
        query = parse_qs(urlparse(data["authorization_url"]).query)
        assert data["authorization_url"].startswith("https://provider.test/oauth/authorize?")
        assert query["state"] == [data["state"]]
        assert query["client_id"] == ["client-id"]

    def test_callback_creates_connection_without_exposing_tokens(self, client):
        response = _connect(client)

        assert response.status_code == 200
        data = response.json()
        assert data["owner_id"] == "emp-1"
        assert data["provider"] == "github"
        assert data["external_account_id"] == "acct-1"
        assert data["status"] == "active"
        assert data["has_cursor"] is False
        assert "token-for-abc" not in response.text
        assert "access_token" not in data

    def test_callback_with_tampered_state_rejected(self, client):
        response = client.get(
            f"{API}/integrations/oauth/github/callback",
            params={"code": "abc", "state": "not-a-valid-state"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_second_connection_for_same_owner_conflicts(self, client):
        assert _connect(client).status_code == 200

        response = _connect(client, code="def")

        assert response.status_code == 409
        assert response.json()["error"] == "DuplicateConnectionError"

    def test_unknown_provider_is_404(self, client):
        response = client.get(f"{API}/integrations/oauth/myspace/authorize", params={"owner_id": "emp-1"})

        assert response.status_code == 404

    def test_provider_not_enabled_is_400(self, client):
        response = client.get(f"{API}/integrations/oauth/slack/authorize", params={"owner_id": "emp-1"})

        assert response.status_code == 400

    def test_invalid_owner_type_rejected(self, client):
        response = client.get(
            f"{API}/integrations/oauth/github/authorize",
            params={"owner_id": "emp-1", "owner_type": "robot"},
        )

        assert response.status_code == 400


# =============================================================================
# Connections, sync and skills
# =============================================================================

class TestSyncEndpoints:

    def test_list_connections(self, client):
        _connect(client)

        response = client.get(f"{API}/integrations/emp-1")

        assert response.status_code == 200
        assert [c["provider"] for c in response.json()] == ["github"]

    def test_list_connections_for_unknown_owner_is_empty(self, client):
        response = client.get(f"{API}/integrations/nobody")

        assert response.status_code == 200
        assert response.json() == []

    def test_manual_sync_then_skills(self, client):
        _connect(client)

        response = client.post(f"{API}/integrations/emp-1/github/sync")

        assert response.status_code == 200
        summary = response.json()
        assert summary["status"] == "completed"
        assert summary["mode"] == "incremental"
        assert summary["activities_processed"] == 3
        assert summary["pages_committed"] == 2
        assert summary["error_count"] == 0

        skills = client.get(f"{API}/skills/emp-1").json()
        names = {s["skill_name"] for s in skills["skills"]}
        confidences = [s["confidence"] for s in skills["skills"]]
        assert "Python" in names
        assert {s["source"] for s in skills["skills"]} == {"github", "aggregate"}
        assert confidences == sorted(confidences, reverse=True)
        assert skills["total"] == len(skills["skills"])

    def test_skills_filtered_by_source(self, client):
        _connect(client)
        client.post(f"{API}/integrations/emp-1/github/sync")

        response = client.get(f"{API}/skills/emp-1", params={"source": "aggregate"})

        assert response.status_code == 200
        assert {s["source"] for s in response.json()["skills"]} == {"aggregate"}

    def test_full_sync_flag(self, client):
        _connect(client)
        client.post(f"{API}/integrations/emp-1/github/sync")

        response = client.post(f"{API}/integrations/emp-1/github/sync", params={"full": "true"})

        assert response.status_code == 200
        assert response.json()["mode"] == "full"

    def test_sync_without_connection_is_404(self, client):
        response = client.post(f"{API}/integrations/emp-1/github/sync")

        assert response.status_code == 404
        assert response.json()["error"] == "ConnectionNotFoundError"

    def test_sync_already_running_is_409(self, client, api_container):
        from skillsync.core.errors import SyncInProgressError

        _connect(client)
        with patch.object(
            api_container.orchestrator,
            "trigger_sync",
            new=AsyncMock(side_effect=SyncInProgressError("sync already running")),
        ):
            response = client.post(f"{API}/integrations/emp-1/github/sync")

        assert response.status_code == 409

    def test_connection_health(self, client):
        _connect(client)

        response = client.post(f"{API}/integrations/emp-1/github/health")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["errors"] == []

    def test_disconnect_keeps_skills(self, client):
        _connect(client)
        client.post(f"{API}/integrations/emp-1/github/sync")
        before = client.get(f"{API}/skills/emp-1").json()["total"]

        response = client.delete(f"{API}/integrations/emp-1/github")

        assert response.status_code == 200
        assert response.json()["status"] == "revoked"
        assert client.post(f"{API}/integrations/emp-1/github/sync").status_code == 404
        assert client.get(f"{API}/skills/emp-1").json()["total"] == before


# =============================================================================
# Webhooks
# =============================================================================

class TestWebhookEndpoint:

    def _payload(self):
        return {"sha": "w1", "account": "acct-1", "subject": "acme/api", "files": ["svc/app.py"]}

    def test_webhook_accepted_then_duplicate(self, client):
        _connect(client)
        raw, headers = webhook_request(self._payload())

        first = client.post(f"{API}/webhooks/github", content=raw, headers=headers)
        second = client.post(f"{API}/webhooks/github", content=raw, headers=headers)

        assert first.status_code == 200
        assert first.json() == {"status": "accepted", "delivery_id": "d-1"}
        assert second.json() == {"status": "duplicate", "delivery_id": "d-1"}
        names = {s["skill_name"] for s in client.get(f"{API}/skills/emp-1").json()["skills"]}
        assert "Python" in names

    def test_bad_signature_is_401(self, client):
        raw, headers = webhook_request(self._payload())
        headers["X-Test-Signature"] = "sha256=" + "f" * 64

        response = client.post(f"{API}/webhooks/github", content=raw, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"] == "SignatureVerificationError"

    def test_malformed_payload_is_400(self, client):
        raw, headers = webhook_request({"subject": "acme/api"})

        response = client.post(f"{API}/webhooks/github", content=raw, headers=headers)

        assert response.status_code == 400

    def test_handshake_echoes_challenge(self, client):
        raw, headers = webhook_request({"challenge": "xyz"}, event="handshake")

        response = client.post(f"{API}/webhooks/github", content=raw, headers=headers)

        assert response.json() == {"challenge": "xyz"}

    def test_retry_endpoint_reports_counts(self, client):
        response = client.post(f"{API}/integrations/webhooks/retry")

        assert response.status_code == 200
        assert response.json() == {"retried": 0, "succeeded": 0, "failed": 0, "ignored": 0}


# =============================================================================
# Guards and error handling
# =============================================================================

class TestGuardsAndErrors:

    def test_admin_endpoints_require_token_when_configured(self, client):
        with patch("skillsync.api.deps.settings") as mock_settings:
            mock_settings.INTERNAL_API_TOKEN = "s3cret-admin-token"
            mock_settings.IS_PRODUCTION = False

            denied = client.get(f"{API}/integrations/providers")
            wrong = client.get(f"{API}/integrations/providers", headers={"X-Internal-Token": "nope"})
            allowed = client.get(
                f"{API}/integrations/providers",
                headers={"X-Internal-Token": "s3cret-admin-token"},
            )

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 200

    def test_production_without_token_is_closed(self, client):
        with patch("skillsync.api.deps.settings") as mock_settings:
            mock_settings.INTERNAL_API_TOKEN = None
            mock_settings.IS_PRODUCTION = True

            response = client.get(f"{API}/skills/emp-1")

        assert response.status_code == 401

    def test_webhooks_are_not_token_guarded(self, client):
        raw, headers = webhook_request({"subject": "acme/api"}, event="star")

        with patch("skillsync.api.deps.settings") as mock_settings:
            mock_settings.INTERNAL_API_TOKEN = "s3cret-admin-token"
            mock_settings.IS_PRODUCTION = True

            response = client.post(f"{API}/webhooks/github", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_unmapped_pipeline_error_is_500(self, client, api_container):
        from skillsync.core.errors import UpstreamUnavailableError

        with patch.object(
            api_container.registry,
            "list_connections",
            new=AsyncMock(side_effect=UpstreamUnavailableError("provider down")),
        ):
            response = client.get(f"{API}/integrations/emp-1")

        assert response.status_code == 500
        assert response.json()["error"] == "UpstreamUnavailableError"

    def test_container_missing_is_503(self):
        from skillsync.api.deps import get_container

        request = MagicMock()
        request.app.state.container = None

        with pytest.raises(HTTPException) as exc_info:
            get_container(request)

        assert exc_info.value.status_code == 503
