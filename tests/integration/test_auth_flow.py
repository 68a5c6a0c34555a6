"""
Integration tests for the session auth flow.
"""

import time
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from service_auth.app.main import BOUNCE_HEADER, create_app
from shared.config import ServiceConfig
from shared.test_helpers import TEST_AUDIENCE, TEST_SECRET, TEST_TENANT, SessionTokenFactory, TestSession


class FakeTokenEndpoint:
    """Tenant token endpoint behind an edge proxy that challenges the first request."""

    def __init__(self, challenges: int = 1):
        self.challenges = challenges
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.requests) <= self.challenges:
            return httpx.Response(
                403,
                headers={"server": "cloudflare", "cf-ray": "8a1b2c3d4e5f-AMS"},
                text="<html><title>Just a moment...</title>Checking your browser</html>",
            )
        form = parse_qs(request.content.decode())
        return httpx.Response(200, json={
            "access_token": f"shpua_{len(self.requests)}",
            "scope": form.get("scope", [""])[0],
            "expires_in": 86399,
        })


class TestAuthFlow:
    """Integration tests for complete auth flow."""

    @pytest.fixture
    def endpoint(self):
        return FakeTokenEndpoint()

    @pytest.fixture
    def client(self, endpoint):
        config = ServiceConfig(
            service_name="auth",
            port=8010,
            env="test",
            shared_secret=TEST_SECRET,
            expected_audience=TEST_AUDIENCE,
            scopes="read_products,write_customers",
            exchange_base_delay=0,
            exchange_jitter=0,
        )
        app = create_app(config, transport=httpx.MockTransport(endpoint))
        with TestClient(app) as test_client:
            yield test_client

    @pytest.fixture
    def factory(self):
        return SessionTokenFactory()

    def test_complete_auth_flow(self, client, endpoint, factory):
        """Validate, exchange through a challenge, then serve from cache."""
        session = TestSession(subject="7001")
        token = factory.token(session, lifetime=3600)
        headers = {"Authorization": f"Bearer {token}", "User-Agent": "Mozilla/5.0 (Macintosh)"}

        # 1. First validation exchanges the token, retrying past the challenge
        first = client.post("/auth/validate", headers=headers)
        assert first.status_code == 200
        first_data = first.json()
        assert first_data["success"] is True
        assert first_data["from_cache"] is False
        assert first_data["tenant_origin"] == TEST_TENANT
        assert first_data["subject_id"] == "7001"
        assert first_data["session_id"] == session.session_id
        assert first_data["scope"] == "read_products,write_customers"
        assert len(endpoint.requests) == 2
        assert endpoint.requests[0].headers["user-agent"] == endpoint.requests[1].headers["user-agent"]

        # 2. Same token again is a cache hit without another exchange
        second = client.post("/auth/validate", headers=headers)
        assert second.json()["from_cache"] is True
        assert len(endpoint.requests) == 2

        # 3. Protected route resolves the same identity
        session_response = client.get("/auth/session", headers=headers)
        assert session_response.status_code == 200
        assert session_response.json()["subject_id"] == "7001"

        # 4. Cache statistics reflect the traffic
        stats = client.get("/auth/cache/stats").json()["cache"]
        assert stats["size"] == 1
        assert stats["hits"] == 2
        assert stats["misses"] == 1

        # 5. Challenges are visible in metrics
        metrics = client.get("/metrics").text
        assert 'edge_challenges_total{challenge_type="browser_check"} 1.0' in metrics

    def test_tampered_token_is_bounced(self, client, endpoint, factory):
        header, payload, signature = factory.token().split(".")
        tampered_signature = ("A" if signature[0] != "A" else "B") + signature[1:]

        response = client.post(
            "/auth/validate",
            headers={"Authorization": f"Bearer {header}.{payload}.{tampered_signature}"},
        )

        assert response.status_code == 401
        assert response.headers[BOUNCE_HEADER] == "1"
        assert response.json()["error_kind"] == "SignatureMismatch"
        assert endpoint.requests == []

    def test_token_for_other_app_is_bounced(self, client, endpoint, factory):
        token = factory.token(aud="someone-elses-client-id")

        response = client.post("/auth/validate", json={"token": token})

        assert response.status_code == 401
        assert response.json()["error_kind"] == "AudienceMismatch"
        assert endpoint.requests == []

    def test_skewed_mobile_clock_is_tolerated(self, client, factory):
        token = factory.token(now=time.time() - 600, lifetime=60)
        desktop = client.post("/auth/validate", json={"token": token})
        mobile = client.post("/auth/validate", json={"token": token, "device_class": "mobile"})

        assert desktop.status_code == 401
        assert desktop.json()["error_kind"] == "Expired"
        assert mobile.status_code == 200
        assert mobile.json()["success"] is True
