"""Integration tests for the HTTP authentication surface.

Covers the documented end-to-end flows:
- Registration with the onboarding mail
- Password login with the email OTP challenge and trusted-device cookie
- Failed-attempt alerts
- Forgot/reset password
- Federated sign-in
- Authenticated profile, permission and audit queries
"""

import re

import httpx
import pytest
from fastapi.testclient import TestClient

from eoty import app as app_module
from eoty.service.oauth import GoogleProvider
from eoty.service.runtime import get_runtime
from eoty.storage.common import event_from_row

REGISTRATION = {
    "firstName": "Ana",
    "lastName": "B",
    "email": "Ana@Ex.com",
    "password": "secret1",
    "chapter": "1",
}


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _code_from(mail):
    return re.search(r"code is: (\d{6})", mail.text).group(1)


def _token_from(mail):
    return re.search(r"token=([\w-]+)", mail.html).group(1)


def _register(client, **overrides):
    response = client.post("/auth/register", json={**REGISTRATION, **overrides})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _login_with_code(client, mailbox, email="ana@ex.com", password="secret1"):
    response = client.post("/auth/login", json={"email": email, "password": password})
    user_id = response.json()["data"]["userId"]
    response = client.post(
        "/auth/verify-2fa", json={"userId": user_id, "code": _code_from(mailbox.sent[-1])}
    )
    assert response.status_code == 200, response.text
    return response


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_against_active_chapter(self, client, mailbox):
        """A new account gets an OTP row and exactly one onboarding mail."""
        response = client.post("/auth/register", json=REGISTRATION)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["userId"]
        assert body["data"]["email"] == "ana@ex.com"
        assert body["data"]["requires2FA"] is True
        assert "token" not in body["data"]

        store = get_runtime().store
        assert store.count_otps(body["data"]["userId"]) == 1
        assert len(mailbox.sent) == 1
        assert "Verification" in mailbox.sent[0].subject

    def test_register_rejects_duplicate_email(self, client, mailbox):
        _register(client)
        response = client.post("/auth/register", json={**REGISTRATION, "email": "ana@EX.com"})
        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "conflict"
        assert body["message"] == "User with this email already exists"

    def test_register_requires_all_fields(self, client):
        response = client.post("/auth/register", json={"email": "x@example.com"})
        assert response.status_code == 400
        assert response.json()["message"] == "All fields are required"

    def test_register_rejects_unknown_chapter(self, client):
        response = client.post("/auth/register", json={**REGISTRATION, "chapter": 42})
        assert response.status_code == 400
        assert response.json()["message"] == "Selected chapter is not valid or active"


class TestLoginFlow:
    def test_login_issues_challenge_then_session(self, client, mailbox):
        """Password login for a 2FA user never returns a session directly."""
        _register(client)

        response = client.post("/auth/login", json={"email": "ana@ex.com", "password": "secret1"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requires2FA"] is True
        assert "token" not in data
        assert "remember_device" not in response.cookies
        assert mailbox.sent[-1].subject == "Your EOTY Platform Verification Code"

        response = client.post(
            "/auth/verify-2fa",
            json={"userId": data["userId"], "code": _code_from(mailbox.sent[-1])},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["data"]["token"]
        assert body["data"]["user"]["email"] == "ana@ex.com"
        assert "requires2FA" not in body["data"]
        cookie = response.headers["set-cookie"]
        assert "remember_device=" in cookie
        assert "HttpOnly" in cookie
        assert "samesite=lax" in cookie.lower()
        assert f"Max-Age={30 * 24 * 60 * 60}" in cookie

    def test_login_is_case_insensitive(self, client, mailbox):
        _register(client)
        response = client.post("/auth/login", json={"email": "ANA@EX.COM", "password": "secret1"})
        assert response.status_code == 200

    def test_trusted_device_skips_challenge(self, client, mailbox):
        _register(client)
        _login_with_code(client, mailbox)
        sent = len(mailbox.sent)

        response = client.post("/auth/login", json={"email": "ana@ex.com", "password": "secret1"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"]
        assert "requires2FA" not in data
        assert len(mailbox.sent) == sent

    def test_wrong_code_is_rejected(self, client, mailbox):
        user_id = _register(client)["userId"]
        client.post("/auth/login", json={"email": "ana@ex.com", "password": "secret1"})
        response = client.post("/auth/verify-2fa", json={"userId": user_id, "code": "000000"})
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid or expired verification code"

    def test_numeric_code_is_accepted(self, client, mailbox):
        user_id = _register(client)["userId"]
        client.post("/auth/login", json={"email": "ana@ex.com", "password": "secret1"})
        code = int(_code_from(mailbox.sent[-1]))
        response = client.post("/auth/verify-2fa", json={"userId": user_id, "code": code})
        assert response.status_code == 200

    def test_challenge_mail_failure_is_fatal(self, client, mailbox):
        _register(client)
        mailbox.fail = True
        response = client.post("/auth/login", json={"email": "ana@ex.com", "password": "secret1"})
        assert response.status_code == 500
        assert response.json()["message"] == "Failed to send verification code. Please try again."

    def test_repeated_failures_raise_alert(self, client, mailbox):
        """Five wrong passwords in the window produce a high-severity alert."""
        user_id = _register(client)["userId"]
        for _ in range(5):
            response = client.post(
                "/auth/login", json={"email": "ana@ex.com", "password": "wrong"}
            )
            assert response.status_code == 401
            assert response.json()["message"] == "Invalid email or password"

        alerts = get_runtime().store.list_alerts(user_id, "failed_attempts")
        assert len(alerts) == 1
        assert alerts[0].severity == "high"

    def test_forwarded_header_does_not_change_origin(self, client, mailbox):
        user_id = _register(client)["userId"]
        for i in range(5):
            client.post(
                "/auth/login",
                json={"email": "ana@ex.com", "password": "wrong"},
                headers={"X-Forwarded-For": f"203.0.113.{i}"},
            )

        store = get_runtime().store
        origins = {
            event_from_row(row).ip_address
            for row in store.activity_rows
            if event_from_row(row).kind == "failed_login"
        }
        assert origins == {"testclient"}
        assert len(store.list_alerts(user_id, "failed_attempts")) == 1

    def test_unknown_user_matches_wrong_password(self, client):
        response = client.post("/auth/login", json={"email": "nobody@ex.com", "password": "x"})
        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "message": "Invalid email or password",
            "code": "unauthorized",
        }

    def test_federated_only_account_code(self, client):
        get_runtime().store.create_user("fed@ex.com")
        response = client.post("/auth/login", json={"email": "fed@ex.com", "password": "x"})
        assert response.status_code == 401
        assert response.json()["code"] == "GOOGLE_ACCOUNT_NO_PASSWORD"

    def test_logout_records_event(self, client, mailbox):
        user_id = _register(client)["userId"]
        token = _login_with_code(client, mailbox).json()["data"]["token"]
        response = client.post("/auth/logout", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["message"] == "Logout successful"
        kinds = [e.kind for e in get_runtime().activity.history_for(user_id)]
        assert kinds[0] == "logout"

    def test_anonymous_logout_succeeds(self, client):
        assert client.post("/auth/logout").status_code == 200


class TestPasswordReset:
    def test_unknown_email_answers_generically(self, client, mailbox):
        response = client.post("/auth/forgot-password", json={"email": "nobody@ex.com"})
        assert response.status_code == 200
        assert "If an account with this email exists" in response.json()["message"]
        store = get_runtime().store
        assert store.reset_tokens == {}
        assert mailbox.sent == []
        last = event_from_row(store.activity_rows[-1])
        assert last.kind == "password_reset_request"
        assert last.success is False

    def test_reset_flow(self, client, mailbox):
        _register(client)
        client.post("/auth/forgot-password", json={"email": "ana@ex.com"})
        token = _token_from(mailbox.sent[-1])

        response = client.post("/auth/verify-reset-token", json={"token": token})
        assert response.status_code == 200

        response = client.post(
            "/auth/reset-password", json={"token": token, "newPassword": "short1!"}
        )
        assert response.status_code == 400
        assert response.json()["message"].startswith("Password must be at least 8 characters")

        response = client.post(
            "/auth/reset-password", json={"token": token, "newPassword": "Abcdef1!"}
        )
        assert response.status_code == 200

        response = client.post("/auth/login", json={"email": "ana@ex.com", "password": "secret1"})
        assert response.status_code == 401
        response = client.post("/auth/login", json={"email": "ana@ex.com", "password": "Abcdef1!"})
        assert response.status_code == 200

    def test_reset_token_cannot_be_reused(self, client, mailbox):
        _register(client)
        client.post("/auth/forgot-password", json={"email": "ana@ex.com"})
        token = _token_from(mailbox.sent[-1])
        client.post("/auth/reset-password", json={"token": token, "newPassword": "Abcdef1!"})
        response = client.post(
            "/auth/reset-password", json={"token": token, "newPassword": "Abcdef2!"}
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid or expired reset token"

    def test_invalid_email_format(self, client):
        response = client.post("/auth/forgot-password", json={"email": "nope"})
        assert response.status_code == 400


class TestEmailVerification:
    def test_verify_email_from_onboarding_mail(self, client, mailbox):
        _register(client)
        token = _token_from(mailbox.sent[0])
        response = client.post("/auth/verify-email", json={"token": token})
        assert response.status_code == 200
        assert response.json()["data"] == {"email": "ana@ex.com"}
        assert mailbox.sent[-1].subject == "Welcome to EOTY Platform!"

        response = client.post("/auth/verify-email", json={"token": token})
        assert response.status_code == 400

    def test_resend_for_unknown_email(self, client, mailbox):
        response = client.post("/auth/resend-verification", json={"email": "nobody@ex.com"})
        assert response.status_code == 200
        assert mailbox.sent == []


class TestFederatedLogin:
    def _install_google(self, userinfo):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "at"})
            return httpx.Response(200, json=userinfo)

        runtime = get_runtime()
        runtime.auth.providers["google"] = GoogleProvider(
            "client-id",
            "client-secret",
            frontend_url=runtime.settings.frontend_url,
            transport=httpx.MockTransport(handler),
        )

    def test_new_google_user_is_challenged(self, client, mailbox):
        self._install_google(
            {"id": "g-new", "email": "new@ex.com", "given_name": "New", "family_name": "User"}
        )
        response = client.post("/auth/google/callback", json={"code": "auth-code"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requires2FA"] is True
        assert "token" not in data

        store = get_runtime().store
        user = store.get_user_by_email("new@ex.com")
        assert user.chapter_id is None
        assert user.is_2fa_enabled is True
        assert store.count_otps(user.id) == 1

    def test_missing_code(self, client):
        self._install_google({"id": "g"})
        response = client.post("/auth/google/callback", json={})
        assert response.status_code == 400
        assert response.json()["message"] == "Authorization code is required"

    def test_unconfigured_facebook(self, client):
        response = client.post("/auth/facebook/callback", json={"code": "c"})
        assert response.status_code == 500
        assert response.json()["message"] == "Facebook OAuth not configured on server"


class TestAuthenticatedEndpoints:
    def _session(self, client, mailbox):
        _register(client)
        return _login_with_code(client, mailbox).json()["data"]["token"]

    def test_missing_token(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["message"] == "Access token required"

    def test_garbage_token(self, client):
        response = client.get("/auth/me", headers=_bearer("not-a-token"))
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired token"

    def test_me_returns_profile(self, client, mailbox):
        token = self._session(client, mailbox)
        response = client.get("/auth/me", headers=_bearer(token))
        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["email"] == "ana@ex.com"
        assert user["chapter"] == 1
        assert user["is2faEnabled"] is True
        assert user["profileCompletion"]["percentage"] == 0

    def test_update_profile(self, client, mailbox):
        token = self._session(client, mailbox)
        response = client.put(
            "/auth/profile",
            headers=_bearer(token),
            json={"bio": "Hi", "learningGoals": "Finish the course"},
        )
        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["bio"] == "Hi"
        assert user["learningGoals"] == "Finish the course"

        response = client.put("/auth/profile", headers=_bearer(token), json={"role": "admin"})
        assert response.status_code == 400

    def test_permissions_for_learner(self, client, mailbox):
        token = self._session(client, mailbox)
        response = client.get("/auth/permissions", headers=_bearer(token))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["role"] == "user"
        assert "course:view" in data["permissions"]
        assert "user:manage_roles" not in data["permissions"]

    def test_activity_logs_page_and_filter(self, client, mailbox):
        token = self._session(client, mailbox)
        response = client.get("/auth/activity-logs", headers=_bearer(token))
        logs = response.json()["data"]["logs"]
        assert [log["activityType"] for log in logs[:2]] == ["login_2fa", "verification_email_sent"]
        assert logs[0]["location"] == "Unknown"

        response = client.get(
            "/auth/activity-logs?activityType=register&limit=1", headers=_bearer(token)
        )
        logs = response.json()["data"]["logs"]
        assert len(logs) == 1
        assert logs[0]["activityType"] == "register"

        response = client.get("/auth/activity-logs?limit=0", headers=_bearer(token))
        assert response.status_code == 400

    def test_activity_logs_time_window(self, client, mailbox):
        token = self._session(client, mailbox)
        response = client.get(
            "/auth/activity-logs",
            params={"since": "2000-01-01T00:00:00Z", "until": "2999-01-01T00:00:00Z"},
            headers=_bearer(token),
        )
        assert response.status_code == 200
        assert len(response.json()["data"]["logs"]) >= 2

        response = client.get(
            "/auth/activity-logs", params={"since": "2999-01-01T00:00:00Z"}, headers=_bearer(token)
        )
        assert response.json()["data"]["logs"] == []

        response = client.get(
            "/auth/activity-logs", params={"until": "2000-01-01T00:00:00Z"}, headers=_bearer(token)
        )
        assert response.json()["data"]["logs"] == []

        response = client.get(
            "/auth/activity-logs", params={"since": "yesterday"}, headers=_bearer(token)
        )
        assert response.status_code == 400

    def test_alerts_and_admin_resolution(self, client, mailbox):
        token = self._session(client, mailbox)
        for _ in range(5):
            client.post("/auth/login", json={"email": "ana@ex.com", "password": "wrong"})

        response = client.get("/auth/alerts", headers=_bearer(token))
        alerts = response.json()["data"]["alerts"]
        assert [a["alertType"] for a in alerts] == ["failed_attempts"]
        alert_id = alerts[0]["id"]

        response = client.post(f"/auth/alerts/{alert_id}/resolve", headers=_bearer(token))
        assert response.status_code == 403
        assert response.json()["message"] == "Admin access required"

        runtime = get_runtime()
        admin = runtime.store.create_user("admin@ex.com", role="admin")
        admin_token = runtime.sessions.issue_session(admin)
        response = client.post(f"/auth/alerts/{alert_id}/resolve", headers=_bearer(admin_token))
        assert response.status_code == 200
        assert response.json()["data"]["alert"]["isResolved"] is True

        response = client.get("/auth/alerts", headers=_bearer(token))
        assert response.json()["data"]["alerts"] == []


class TestHealth:
    def test_health_reports_capabilities(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["store"] == "memory"
        assert body["capabilities"]["two_factor"] is True
        assert response.headers["API-Version"] == body["version"]
        assert response.headers["X-Request-ID"]
