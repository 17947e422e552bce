"""End-to-end authentication flows through the FastAPI app."""

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from happyjourney import app as app_module
from happyjourney.service.runtime import get_runtime
from happyjourney.storage.errors import ConstraintViolation
from happyjourney.storage.models import utcnow

PASSWORD = "CorrectHorse42"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def member():
    runtime = get_runtime()
    user = runtime.store.create_user("member@example.com", name="Member", email_verified=True)
    runtime.auth.save_password(user.id, PASSWORD)
    return user


def _cookie_headers(response):
    return {
        raw.split("=", 1)[0]: raw for raw in response.headers.get_list("set-cookie")
    }


def _latest_code(email: str, purpose: str) -> str:
    codes = [
        otp
        for otp in get_runtime().store.otps.values()
        if otp.email == email and otp.purpose == purpose and not otp.used
    ]
    return codes[-1].code


class TestLogin:
    def test_login_sets_token_and_session_cookies(self, client, member):
        response = client.post(
            "/api/auth/login", json={"email": member.email, "password": PASSWORD}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["user"]["email"] == member.email
        assert "password" not in body["user"]
        assert body["token"]

        cookies = _cookie_headers(response)
        assert sorted(cookies) == ["auth_token", "session_id"]
        assert "Max-Age=604800" in cookies["auth_token"]
        assert "Max-Age=2592000" in cookies["session_id"]
        for raw in cookies.values():
            assert "HttpOnly" in raw
            assert "samesite=lax" in raw.lower()

        session_id = response.cookies["session_id"]
        sess = get_runtime().store.get_active_session(session_id, utcnow())
        assert sess.user_id == member.id

    def test_login_with_wrong_password(self, client, member):
        response = client.post(
            "/api/auth/login", json={"email": member.email, "password": "nope-nope"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"
        assert "set-cookie" not in response.headers

    def test_login_unknown_user(self, client):
        response = client.post(
            "/api/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )
        assert response.status_code == 401


class TestLogout:
    def test_logout_clears_cookies_and_deletes_session(self, client, member):
        login = client.post(
            "/api/auth/login", json={"email": member.email, "password": PASSWORD}
        )
        session_id = login.cookies["session_id"]

        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        assert response.json()["success"] is True
        cookies = _cookie_headers(response)
        assert sorted(cookies) == ["auth_token", "session_id"]
        for raw in cookies.values():
            assert "Max-Age=0" in raw
            assert "HttpOnly" in raw
        assert session_id not in get_runtime().store.sessions

    def test_logout_without_session_still_succeeds(self, client):
        fresh = TestClient(app_module.app)
        response = fresh.post("/api/auth/logout")
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_logout_with_unknown_session_succeeds(self, client):
        fresh = TestClient(app_module.app)
        fresh.cookies.set("session_id", "0" * 64)
        response = fresh.post("/api/auth/logout")
        assert response.status_code == 200
        assert len(_cookie_headers(response)) == 2


class TestMe:
    def test_me_requires_bearer(self, client, member):
        login = client.post(
            "/api/auth/login", json={"email": member.email, "password": PASSWORD}
        )
        token = login.json()["token"]

        ok = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert ok.status_code == 200
        assert ok.json()["id"] == member.id

        # Cookies alone do not satisfy the strict bearer contract
        cookie_only = TestClient(app_module.app)
        cookie_only.cookies.set("auth_token", token)
        cookie_only.cookies.set("session_id", login.cookies["session_id"])
        assert cookie_only.get("/api/auth/me").status_code == 401

    def test_me_rejects_invalid_bearer(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer bogus"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_update_profile(self, client, member):
        token = client.post(
            "/api/auth/login", json={"email": member.email, "password": PASSWORD}
        ).json()["token"]
        response = client.put(
            "/api/auth/me",
            headers={"Authorization": f"Bearer {token}"},
            json={"name": "", "bio": "Happy", "profileImage": "https://img.example/x.png"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "Member"
        assert body["bio"] == "Happy"
        assert body["profileImage"] == "https://img.example/x.png"


class TestMalformedCredentials:
    def test_non_ascii_bearer_is_unauthorized(self, client):
        response = client.get(
            "/api/auth/me", headers={"Authorization": b"Bearer eyJhbGciOiJIUzI1NiJ9.e30.\xe9"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestRegistrationFlow:
    def test_register_then_verify_signs_in(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "New@Example.com", "password": PASSWORD, "name": "Newbie"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["requiresVerification"] is True
        assert "set-cookie" not in response.headers
        # The pending token does not authenticate
        pending = client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"}
        )
        assert pending.status_code == 401

        code = _latest_code("new@example.com", "email_verification")
        verified = client.post(
            "/api/auth/verify-otp", json={"email": "new@example.com", "otp": code}
        )
        assert verified.status_code == 200
        assert verified.json()["user"]["emailVerified"] is True
        assert sorted(_cookie_headers(verified)) == ["auth_token", "session_id"]

        reused = client.post(
            "/api/auth/verify-otp", json={"email": "new@example.com", "otp": code}
        )
        assert reused.status_code == 400

    def test_register_duplicate_email(self, client, member):
        response = client.post(
            "/api/auth/register",
            json={"email": member.email, "password": PASSWORD, "name": "Dup"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_losing_insert_race_sends_no_code(self, client, monkeypatch):
        runtime = get_runtime()
        sent = Mock(return_value=True)
        monkeypatch.setattr(runtime.email, "send_otp", sent)
        monkeypatch.setattr(
            runtime.store,
            "create_user",
            Mock(side_effect=ConstraintViolation("User with this email already exists")),
        )
        response = client.post(
            "/api/auth/register",
            json={"email": "race@example.com", "password": PASSWORD, "name": "Racer"},
        )
        assert response.status_code == 409
        sent.assert_not_called()
        assert not runtime.store.otps

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "bad-email", "password": PASSWORD, "name": "X"},
            {"email": "ok@example.com", "password": "short", "name": "X"},
            {"email": "ok@example.com", "password": PASSWORD},
        ],
    )
    def test_register_validation(self, client, payload):
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_verify_otp_rejects_malformed_code(self, client):
        response = client.post(
            "/api/auth/verify-otp", json={"email": "a@example.com", "otp": "12ab56"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid OTP format"


class TestPasswordReset:
    def test_reset_requires_existing_user(self, client):
        response = client.post(
            "/api/auth/send-otp", json={"email": "ghost@example.com", "type": "password_reset"}
        )
        assert response.status_code == 404

    def test_full_reset_flow(self, client, member):
        sent = client.post(
            "/api/auth/send-otp", json={"email": member.email, "type": "password_reset"}
        )
        assert sent.status_code == 200
        assert sent.json()["expiresIn"] == 600

        code = _latest_code(member.email, "password_reset")
        verified = client.post(
            "/api/auth/verify-otp",
            json={"email": member.email, "otp": code, "type": "password_reset"},
        )
        assert verified.status_code == 200
        reset_token = verified.json()["resetToken"]
        assert "set-cookie" not in verified.headers

        # A reset token is not an access token
        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {reset_token}"})
        assert me.status_code == 401

        changed = client.post(
            "/api/auth/reset-password",
            json={"resetToken": reset_token, "password": "BrandNewPass9"},
        )
        assert changed.status_code == 200
        old = client.post("/api/auth/login", json={"email": member.email, "password": PASSWORD})
        assert old.status_code == 401
        new = client.post(
            "/api/auth/login", json={"email": member.email, "password": "BrandNewPass9"}
        )
        assert new.status_code == 200

    def test_new_code_invalidates_previous(self, client, member):
        client.post("/api/auth/send-otp", json={"email": member.email, "type": "password_reset"})
        first = _latest_code(member.email, "password_reset")
        client.post("/api/auth/send-otp", json={"email": member.email, "type": "password_reset"})
        second = _latest_code(member.email, "password_reset")
        if first == second:
            pytest.skip("random codes collided")
        stale = client.post(
            "/api/auth/verify-otp",
            json={"email": member.email, "otp": first, "type": "password_reset"},
        )
        assert stale.status_code == 400


class TestSigningKeyMisconfigured:
    def test_login_is_server_error_and_identity_fails_closed(self, client, monkeypatch):
        monkeypatch.setenv("AUTH_SECRET", "short")
        from happyjourney.service.runtime import reset_runtime_for_tests

        runtime = reset_runtime_for_tests()
        user = runtime.store.create_user("again@example.com")
        runtime.auth.save_password(user.id, PASSWORD)
        sid = runtime.sessions.create_session(user.id)

        login = client.post(
            "/api/auth/login", json={"email": user.email, "password": PASSWORD}
        )
        assert login.status_code == 500
        assert login.json()["error"]["code"] == "server_error"
        assert "secret" not in login.text.lower()
        assert not runtime.store.sessions.keys() - {sid}

        client.cookies.set("session_id", sid)
        votes = client.post(
            "/api/votes", json={"resourceType": "contestant", "resourceId": "abc"}
        )
        assert votes.status_code == 401
