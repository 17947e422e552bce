import httpx
import pytest
from fastapi.testclient import TestClient

from happyjourney import app as app_module
from happyjourney.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _install_tokeninfo(payload, status_code=200):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, json=payload)

    get_runtime().auth._http_transport = httpx.MockTransport(handler)
    return seen


def test_google_login_creates_verified_user(client):
    seen = _install_tokeninfo(
        {"email": "Fan@Example.com", "name": "Fan", "picture": "https://img.example/f.png"}
    )
    response = client.post("/api/auth/google", json={"idToken": "google-id-token"})
    assert response.status_code == 200
    body = response.json()
    assert body["user"]["email"] == "fan@example.com"
    assert body["user"]["emailVerified"] is True
    assert body["token"]
    assert seen[0].url.params["id_token"] == "google-id-token"
    assert response.cookies.get("session_id")

    again = client.post("/api/auth/google", json={"idToken": "google-id-token"})
    assert again.json()["user"]["id"] == body["user"]["id"]


def test_rejected_google_token(client):
    _install_tokeninfo({"error": "invalid_token"}, status_code=400)
    response = client.post("/api/auth/google", json={"idToken": "bad"})
    assert response.status_code == 401
    assert "set-cookie" not in response.headers


def test_audience_mismatch(client, monkeypatch):
    monkeypatch.setattr(get_runtime().settings, "google_client_id", "our-client")
    _install_tokeninfo({"email": "a@example.com", "aud": "someone-else"})
    response = client.post("/api/auth/google", json={"idToken": "x"})
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Token audience mismatch"
