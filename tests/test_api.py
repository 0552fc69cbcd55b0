"""
API endpoint tests for the Verification Decisioning API

Uses FastAPI's TestClient with the pipeline and QR service wired to a
SQLite store. Startup hooks are not run; module state is patched instead.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from api import server
from config_manager import ConfigManager
from conftest import (
    TENANT_ID,
    TEST_SIGNING_KEY,
    build_background_check,
    build_enrollment_data,
    build_token,
    clean_verification,
)
from verification.decoder import HmacSignatureVerifier, PayloadDecoder
from verification.exceptions import ExternalProviderError
from verification.pipeline import VerificationPipeline
from verification.provider_client import AccessToken
from verification.qr_sessions import QrSessionService

JWS_PATH = "/api/sdk-verification/enrollment-jws"


@pytest.fixture
def provider():
    provider = MagicMock()
    provider.configured = False
    provider.get_access_token.return_value = AccessToken("sdk-access-token")
    return provider


@pytest.fixture
def app_state(store, qr_store, provider, config):
    """Patch server globals with real components on the test database."""
    decoder = PayloadDecoder(
        verifier=HmacSignatureVerifier(TEST_SIGNING_KEY),
        require_signature=True,
        allow_unsigned_data=True,
    )
    pipeline = VerificationPipeline(store, decoder=decoder, provider=provider)
    qr_service = QrSessionService(qr_store, provider, config.qr_sessions)
    db_provider = MagicMock()
    db_provider.health_check.return_value = True

    with patch.object(server, "_pipeline", pipeline), \
            patch.object(server, "_qr_service", qr_service), \
            patch.object(server, "_config", config), \
            patch.object(server, "_db_provider", db_provider), \
            patch.object(server, "_startup_time", datetime.now(timezone.utc)):
        yield {'pipeline': pipeline, 'qr_service': qr_service, 'db_provider': db_provider}


@pytest.fixture
def client(app_state):
    return TestClient(server.app)


def signed(**kwargs):
    return {'token': build_token({'data': build_enrollment_data(**kwargs)})}


# ============================================
# WEBHOOK
# ============================================

class TestEnrollmentJws:
    """Tests for the signed webhook and its alias."""

    def test_approved(self, client):
        response = client.post(JWS_PATH, json=signed(), headers={"X-Request-ID": "req-42"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-42"
        body = response.json()
        assert body["success"] is True
        assert body["data"]["verification"]["status"] == "approved"
        assert body["data"]["account"]["account_created"] is True
        assert body["message"] == "Verification approved. No background check matches."

    def test_alias_route(self, client):
        response = client.post("/api/sdk-verification/jws", json=signed())
        assert response.status_code == 200
        assert response.json()["data"]["verification"]["status"] == "approved"

    def test_rejected_is_still_200(self, client):
        verification = clean_verification()
        verification["idPhotoTamperingDetection"]["score"] = 75
        response = client.post(JWS_PATH, json=signed(verification=verification))

        assert response.status_code == 200
        verdict = response.json()["data"]["verification"]
        assert verdict["status"] == "rejected"
        assert verdict["issues"][0]["type"] == "ID_PHOTO_TAMPERING"
        assert verdict["issues"][0]["severity"] == "critical"

    def test_background_match(self, client):
        response = client.post(JWS_PATH, json=signed(background_check=build_background_check([91])))
        body = response.json()
        assert body["data"]["backgroundCheck"]["case_created"] is True
        assert body["data"]["backgroundCheck"]["case_data"]["recommended_action"] == "ESCALATE"
        assert body["data"]["account"]["aml_status"] == "aml_match_found"

    def test_malformed_token(self, client):
        response = client.post(JWS_PATH, json={"token": "not-a-token"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "MALFORMED_TOKEN"
        assert error["field"] == "token"
        assert "timestamp" in error

    def test_missing_payload_data(self, client):
        response = client.post(JWS_PATH, json={"token": build_token({"other": 1})})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_PAYLOAD_DATA"

    def test_bad_signature(self, client):
        token = build_token({"data": build_enrollment_data()}, secret="wrong-key")
        response = client.post(JWS_PATH, json={"token": token})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"

    @pytest.mark.parametrize("body", [{}, {"token": ""}, {"token": "   "}])
    def test_validation_error(self, client, body):
        response = client.post(JWS_PATH, json=body)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "token"

    def test_tenant_header(self, client, store):
        tenant = "11111111-2222-3333-4444-555555555555"
        response = client.post(JWS_PATH, json=signed(), headers={"X-Tenant-ID": tenant})
        assert response.status_code == 200
        assert store.find_account_by_identity_key(tenant, "784-1990-1234567-1") is not None
        assert store.find_account_by_identity_key(TENANT_ID, "784-1990-1234567-1") is None

    def test_invalid_tenant_header(self, client):
        response = client.post(JWS_PATH, json=signed(), headers={"X-Tenant-ID": "acme"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "HTTP_400"

    def test_pipeline_not_ready(self, client):
        with patch.object(server, "_pipeline", None):
            response = client.post(JWS_PATH, json=signed())
        assert response.status_code == 503

    def test_unexpected_error_is_generic(self, app_state):
        client = TestClient(server.app, raise_server_exceptions=False)
        with patch.object(app_state["pipeline"], "process_token",
                          side_effect=RuntimeError("secret database path /var/db")):
            response = client.post(JWS_PATH, json=signed())

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert "/var/db" not in error["message"]


class TestDirectEnrollment:
    """Tests for /api/sdk-verification/enrollment."""

    def test_token(self, client):
        response = client.post("/api/sdk-verification/enrollment", json=signed())
        assert response.status_code == 200

    def test_unsigned_data(self, client):
        response = client.post("/api/sdk-verification/enrollment",
                               json={"data": build_enrollment_data()})
        assert response.status_code == 200
        assert response.json()["data"]["verification"]["status"] == "approved"

    def test_unsigned_data_refused(self, client, app_state):
        app_state["pipeline"].decoder.allow_unsigned_data = False
        response = client.post("/api/sdk-verification/enrollment",
                               json={"data": build_enrollment_data()})
        assert response.status_code == 400

    def test_neither(self, client):
        response = client.post("/api/sdk-verification/enrollment", json={})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "MISSING_PAYLOAD_DATA"
        assert error["field"] == "token"


# ============================================
# THRESHOLDS / ANALYSIS
# ============================================

class TestThresholds:
    def test_thresholds(self, client):
        response = client.get("/api/sdk-verification/thresholds")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["idScreenDetection"] == {"rejectThreshold": 50, "warningThreshold": 30}
        assert data["idPhotoTamperingDetection"] == {"rejectThreshold": 70, "warningThreshold": 40}
        assert data["faceMatch"] == {"minimumMatchLevel": 3}


class TestAnalysis:
    """The analysis endpoint requires an API key when one is configured."""

    PATH = "/api/sdk-verification/test-analysis"

    def test_dev_mode(self, client):
        with patch.object(server, "API_KEY", ""):
            response = client.post(self.PATH, json={"verification": clean_verification()})
        assert response.status_code == 200
        assert response.json()["data"]["verification"]["status"] == "approved"

    def test_missing_key(self, client):
        with patch.object(server, "API_KEY", "s3cret"):
            response = client.post(self.PATH, json={"verification": clean_verification()})
        assert response.status_code == 401

    def test_wrong_key(self, client):
        with patch.object(server, "API_KEY", "s3cret"):
            response = client.post(self.PATH, json={"verification": clean_verification()},
                                   headers={"X-API-Key": "guess"})
        assert response.status_code == 403

    def test_valid_key(self, client):
        verification = clean_verification()
        verification["idScreenDetection"]["score"] = 51
        with patch.object(server, "API_KEY", "s3cret"):
            response = client.post(self.PATH, json={"verification": verification},
                                   headers={"X-API-Key": "s3cret"})
        assert response.status_code == 200
        assert response.json()["data"]["verification"]["status"] == "rejected"


# ============================================
# QR SESSIONS
# ============================================

class TestQrSessions:
    """Generate, init, status and complete over HTTP."""

    def test_full_flow(self, client):
        generated = client.post("/api/qr-verification/generate",
                                json={"customer_id": "cust-1", "expiry_minutes": 10})
        assert generated.status_code == 200
        session = generated.json()["data"]
        assert session["expires_in_seconds"] == 600

        init = client.post("/api/qr-verification/init",
                           json={"token": session["token"], "device_info": {"os": "iOS"}})
        assert init.status_code == 200
        assert init.json()["data"]["access_token"] == "sdk-access-token"

        status = client.get(f"/api/qr-verification/status/{session['session_id']}")
        assert status.json()["data"]["status"] == "initialized"

        complete = client.post("/api/qr-verification/complete",
                               json={"session_id": session["session_id"], "status": "success"})
        assert complete.json() == {
            "success": True,
            "data": {"session_id": session["session_id"], "status": "completed"},
            "message": "Session status updated",
        }

        again = client.post("/api/qr-verification/init", json={"token": session["token"]})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "QR_SESSION_COMPLETED"

    def test_reused_token(self, client):
        token = client.post("/api/qr-verification/generate", json={}).json()["data"]["token"]
        client.post("/api/qr-verification/init", json={"token": token})
        response = client.post("/api/qr-verification/init", json={"token": token})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "QR_TOKEN_USED"

    def test_expiry_out_of_range(self, client):
        response = client.post("/api/qr-verification/generate", json={"expiry_minutes": 0})
        assert response.status_code == 400
        assert response.json()["error"]["field"] == "expiry_minutes"

    def test_unknown_session(self, client):
        response = client.get("/api/qr-verification/status/QR-NOPE")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_provider_down(self, client, provider):
        token = client.post("/api/qr-verification/generate", json={}).json()["data"]["token"]
        provider.get_access_token.side_effect = ExternalProviderError("connect timeout to 10.0.0.5")

        response = client.post("/api/qr-verification/init", json={"token": token})
        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "EXTERNAL_PROVIDER_ERROR"
        assert "10.0.0.5" not in error["message"]


# ============================================
# HEALTH / MISC
# ============================================

class TestHealth:
    def test_healthy(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["version"] == server.API_VERSION
        assert body["uptime_seconds"] >= 0

    def test_database_down(self, client, app_state):
        app_state["db_provider"].health_check.return_value = False
        body = client.get("/api/v1/health").json()
        assert body["status"] == "degraded"
        assert body["database"] == "disconnected"

    def test_database_error(self, client, app_state):
        app_state["db_provider"].health_check.side_effect = RuntimeError("boom")
        body = client.get("/api/v1/health").json()
        assert body["status"] == "degraded"
        assert body["error_message"] == "Database unreachable"

    def test_starting(self, client):
        with patch.object(server, "_db_provider", None):
            body = client.get("/api/v1/health").json()
        assert body["status"] == "starting"
        assert body["database"] == "unknown"


class TestMisc:
    def test_unknown_route(self, client):
        response = client.get("/api/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "HTTP_404"

    def test_openapi(self, client):
        paths = client.get("/api/openapi.json").json()["paths"]
        assert "/api/sdk-verification/enrollment-jws" in paths
        assert "/api/sdk-verification/jws" in paths
        assert "/api/v1/health" in paths

    def test_root_redirects_to_docs(self, client):
        response = client.get("/", follow_redirects=False)
        assert response.status_code == 307
        assert response.headers["location"] == "/api/docs"
