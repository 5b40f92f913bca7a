"""End-to-end flows through the HTTP surface with the in-memory store."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from loanease.app import app
from loanease.service.clock import FrozenClock
from loanease.service.passwords import hash_password
from loanease.service.runtime import get_runtime, reset_runtime_for_tests
from loanease.storage.models import InvitationStatus

PASSWORD = "correct horse battery"


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def runtime(clock):
    return reset_runtime_for_tests(clock=clock)


@pytest.fixture
def client(runtime):
    return TestClient(app)


def _create_user(runtime, email, role="referrer_admin", organisation_id="org-1", **kwargs):
    return runtime.store.create_user(
        email,
        role=role,
        organisation_id=organisation_id,
        password_hash=hash_password(PASSWORD),
        first_name="Test",
        surname="User",
        **kwargs,
    )


def _login(client, email, password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


class TestLogin:
    def test_browser_login_sets_cookies_only(self, client, runtime):
        user = _create_user(runtime, "broker@example.com")
        resp = _login(client, "Broker@Example.com")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user_id"] == user.id
        assert data["access_token"] is None
        assert "cf_access_token" in resp.cookies
        assert "cf_refresh_token" in resp.cookies
        assert runtime.store.get_user(user.id).last_login_at == runtime.clock.now()

    def test_mobile_login_returns_tokens(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        data = _login(client, "broker@example.com", mobile_app=True).json()["data"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "bearer"

    def test_wrong_password_is_generic(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        wrong = _login(client, "broker@example.com", "wrong password")
        unknown = _login(client, "nobody@example.com", "wrong password")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_lockout_after_repeated_failures(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        limit = runtime.settings.max_login_attempts
        for _ in range(limit - 1):
            assert _login(client, "broker@example.com", "wrong password").status_code == 401
        assert _login(client, "broker@example.com", "wrong password").status_code == 429

        blocked = _login(client, "broker@example.com")
        assert blocked.status_code == 429
        assert "60 minutes" in blocked.json()["error"]["message"]
        actions = [e.action for e in runtime.store.list_audit_entries()]
        assert "login_locked" in actions
        assert "login_blocked" in actions

    def test_inactive_user_is_forbidden(self, client, runtime):
        _create_user(runtime, "gone@example.com", is_active=False)
        assert _login(client, "gone@example.com").status_code == 403

    def test_account_without_password_must_reset(self, client, runtime):
        runtime.store.create_user("legacy@example.com")
        resp = _login(client, "legacy@example.com")
        assert resp.status_code == 403
        assert resp.json()["error"]["details"]["requires_password_reset"] is True


class TestSession:
    def test_me_with_bearer(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        token = _login(client, "broker@example.com", mobile_app=True).json()["data"]["access_token"]
        client.cookies.clear()

        resp = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "broker@example.com"

    def test_me_with_cookie(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        _login(client, "broker@example.com")
        assert client.get("/v1/auth/me").status_code == 200

    def test_me_without_credentials(self, client):
        resp = client.get("/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_expired_access_cookie_renews_from_refresh_cookie(self, client, runtime, clock):
        _create_user(runtime, "broker@example.com")
        _login(client, "broker@example.com")
        clock.advance(timedelta(minutes=16))

        resp = client.get("/v1/auth/me")

        assert resp.status_code == 200
        assert "cf_access_token" in resp.cookies

    def test_expired_bearer_is_not_renewed(self, client, runtime, clock):
        _create_user(runtime, "broker@example.com")
        token = _login(client, "broker@example.com", mobile_app=True).json()["data"]["access_token"]
        clock.advance(timedelta(minutes=16))

        resp = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["error"]["details"]["cause"] == "expired"

    def test_deactivated_user_loses_access(self, client, runtime):
        user = _create_user(runtime, "broker@example.com")
        _login(client, "broker@example.com")
        runtime.store.set_user_active(user.id, False)
        assert client.get("/v1/auth/me").status_code == 401

    def test_refresh_with_body_token(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        refresh = _login(client, "broker@example.com", mobile_app=True).json()["data"]["refresh_token"]
        client.cookies.clear()

        resp = client.post("/v1/auth/refresh", json={"refresh_token": refresh})
        assert resp.status_code == 200
        assert resp.json()["data"]["access_token"]

    def test_refresh_rejects_access_token(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        access = _login(client, "broker@example.com", mobile_app=True).json()["data"]["access_token"]
        resp = client.post("/v1/auth/refresh", json={"refresh_token": access})
        assert resp.status_code == 401

    def test_logout_clears_cookies(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        _login(client, "broker@example.com")
        resp = client.post("/v1/auth/logout")
        assert resp.status_code == 200
        assert "cf_access_token" not in client.cookies
        assert client.post("/v1/auth/logout").status_code == 200


class TestTwoFactor:
    def test_login_sends_code_and_verify_once(self, client, runtime, monkeypatch):
        monkeypatch.setattr(runtime.one_time_codes, "_generate_code", lambda: "482913")
        user = _create_user(runtime, "secure@example.com", two_fa_enabled=True)

        login = _login(client, "secure@example.com")
        assert login.json()["data"]["requires_2fa"] is True
        assert runtime.store.find_one_time_codes(user.id, "482913")

        assert client.post("/v1/auth/2fa/verify", json={"code": "000000"}).status_code == 400
        ok = client.post("/v1/auth/2fa/verify", json={"code": "482913"})
        assert ok.status_code == 200
        assert ok.cookies.get("cf_2fa_verified") == runtime.codec.second_factor_proof(user.id)
        assert client.post("/v1/auth/2fa/verify", json={"code": "482913"}).status_code == 400

    def test_send_is_rate_limited(self, client, runtime):
        _create_user(runtime, "secure@example.com")
        _login(client, "secure@example.com")
        limit = runtime.settings.two_fa_send_rate_limit_per_minute
        for _ in range(limit):
            assert client.post("/v1/auth/2fa/send").status_code == 200
        limited = client.post("/v1/auth/2fa/send")
        assert limited.status_code == 429
        assert "Retry-After" in limited.headers

    def _verified_login(self, client, runtime, monkeypatch, email="secure@example.com"):
        monkeypatch.setattr(runtime.one_time_codes, "_generate_code", lambda: "482913")
        user = _create_user(runtime, email, two_fa_enabled=True)
        _login(client, email)
        return user

    def test_password_only_session_is_held_at_second_factor(self, client, runtime, monkeypatch):
        self._verified_login(client, runtime, monkeypatch)

        me = client.get("/v1/auth/me")
        assert me.status_code == 403
        assert me.json()["error"]["details"]["requires_2fa"] is True
        invite = client.post(
            "/v1/invitations",
            json={"email": "newbie@example.com", "organisation_id": "org-1", "role": "referrer_team"},
        )
        assert invite.status_code == 403

        assert client.post("/v1/auth/2fa/verify", json={"code": "482913"}).status_code == 200
        assert client.get("/v1/auth/me").status_code == 200

    def test_bearer_session_is_held_at_second_factor(self, client, runtime, monkeypatch):
        monkeypatch.setattr(runtime.one_time_codes, "_generate_code", lambda: "482913")
        _create_user(runtime, "secure@example.com", two_fa_enabled=True)
        token = _login(client, "secure@example.com", mobile_app=True).json()["data"]["access_token"]
        client.cookies.clear()

        resp = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    def test_forged_cookie_values_are_refused(self, client, runtime, monkeypatch):
        user = self._verified_login(client, runtime, monkeypatch)
        for forged in ("true", user.id, f"{user.id}.AAAA"):
            client.cookies.set("cf_2fa_verified", forged, domain="testserver.local")
            assert client.get("/v1/auth/me").status_code == 403

    def test_proof_for_another_user_is_refused(self, client, runtime, monkeypatch):
        other = _create_user(runtime, "other@example.com")
        self._verified_login(client, runtime, monkeypatch)
        proof = runtime.codec.second_factor_proof(other.id)
        client.cookies.set("cf_2fa_verified", proof, domain="testserver.local")
        assert client.get("/v1/auth/me").status_code == 403

    def test_send_and_logout_stay_open_before_verification(self, client, runtime, monkeypatch):
        self._verified_login(client, runtime, monkeypatch)
        assert client.post("/v1/auth/2fa/send").status_code == 200
        assert client.post("/v1/auth/logout").status_code == 200
        assert "cf_2fa_verified" not in client.cookies

    def test_login_drops_previous_verification(self, client, runtime, monkeypatch):
        self._verified_login(client, runtime, monkeypatch)
        client.post("/v1/auth/2fa/verify", json={"code": "482913"})
        assert client.get("/v1/auth/me").status_code == 200

        _login(client, "secure@example.com")
        assert client.get("/v1/auth/me").status_code == 403

    def test_users_without_two_factor_are_unaffected(self, client, runtime):
        _create_user(runtime, "plain@example.com")
        _login(client, "plain@example.com")
        assert "cf_2fa_verified" not in client.cookies
        assert client.get("/v1/auth/me").status_code == 200


class TestPasswordReset:
    def _token_for(self, runtime, user_id):
        return next(t.token for t in runtime.store.reset_tokens.values() if t.user_id == user_id)

    def test_full_reset_flow(self, client, runtime):
        user = _create_user(runtime, "forgot@example.com")
        resp = client.post("/v1/auth/password-reset/request", json={"email": "forgot@example.com"})
        assert resp.status_code == 200
        token = self._token_for(runtime, user.id)

        check = client.get("/v1/auth/password-reset/verify", params={"token": token})
        assert check.json()["data"] == {"valid": True}

        done = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": token, "new_password": "brand new secret"},
        )
        assert done.status_code == 200
        assert _login(client, "forgot@example.com", "brand new secret").status_code == 200

        again = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": token, "new_password": "another secret 1"},
        )
        assert again.status_code == 400
        assert again.json()["error"]["message"] == "Invalid or expired reset link"

    def test_unknown_email_looks_the_same(self, client):
        resp = client.post("/v1/auth/password-reset/request", json={"email": "nobody@example.com"})
        assert resp.status_code == 200

    def test_expired_link(self, client, runtime, clock):
        user = _create_user(runtime, "forgot@example.com")
        client.post("/v1/auth/password-reset/request", json={"email": "forgot@example.com"})
        token = self._token_for(runtime, user.id)
        clock.advance(timedelta(hours=1, seconds=1))

        check = client.get("/v1/auth/password-reset/verify", params={"token": token})
        assert check.json()["data"] == {"valid": False}

    def test_short_password_is_validation_error(self, client):
        resp = client.post(
            "/v1/auth/password-reset/confirm", json={"token": "abc", "new_password": "short"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestEmailVerification:
    def _token_for(self, runtime, user_id):
        return next(
            t.token
            for t in runtime.store.email_verification_tokens.values()
            if t.user_id == user_id and t.used_at is None
        )

    def test_resend_then_verify(self, client, runtime):
        user = _create_user(runtime, "unverified@example.com")
        resp = client.post("/v1/auth/resend-verification", json={"email": "unverified@example.com"})
        assert resp.status_code == 200
        token = self._token_for(runtime, user.id)

        done = client.post("/v1/auth/verify-email", json={"token": token})
        assert done.status_code == 200
        assert done.json()["data"] == {"status": "verified"}
        assert runtime.store.get_user(user.id).email_verified is True

        replay = client.post("/v1/auth/verify-email", json={"token": token})
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "validation_error"

    def test_unknown_token(self, client):
        resp = client.post("/v1/auth/verify-email", json={"token": "0" * 64})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid or expired verification link"
        assert resp.json()["error"]["details"]["reason"] == "not_found"

    def test_expired_link(self, client, runtime, clock):
        user = _create_user(runtime, "unverified@example.com")
        client.post("/v1/auth/resend-verification", json={"email": "unverified@example.com"})
        token = self._token_for(runtime, user.id)
        clock.advance(timedelta(hours=24, seconds=1))

        resp = client.post("/v1/auth/verify-email", json={"token": token})
        assert resp.status_code == 400
        assert resp.json()["error"]["details"]["reason"] == "expired"

    def test_resend_for_unknown_email_looks_the_same(self, client):
        resp = client.post("/v1/auth/resend-verification", json={"email": "nobody@example.com"})
        assert resp.status_code == 200

    def test_resend_for_verified_email_points_at_login(self, client, runtime):
        _create_user(runtime, "done@example.com", email_verified=True)
        resp = client.post("/v1/auth/resend-verification", json={"email": "done@example.com"})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Email is already verified. Please login."

    def test_resend_is_rate_limited(self, client, runtime):
        _create_user(runtime, "unverified@example.com")
        limit = runtime.settings.verification_resend_limit_per_hour
        for _ in range(limit):
            assert (
                client.post(
                    "/v1/auth/resend-verification", json={"email": "unverified@example.com"}
                ).status_code
                == 200
            )
        limited = client.post("/v1/auth/resend-verification", json={"email": "unverified@example.com"})
        assert limited.status_code == 429

    def test_me_reports_verification_state(self, client, runtime):
        _create_user(runtime, "broker@example.com")
        _login(client, "broker@example.com")
        assert client.get("/v1/auth/me").json()["data"]["email_verified"] is False


class TestInvitations:
    def _invite(self, client, **body):
        payload = {"email": "newbie@example.com", "organisation_id": "org-1", "role": "referrer_team"}
        payload.update(body)
        return client.post("/v1/invitations", json=payload)

    def test_admin_invite_then_register(self, client, runtime):
        _create_user(runtime, "admin@example.com", role="super_admin", organisation_id=None)
        _login(client, "admin@example.com")

        created = self._invite(client, force_2fa=True)
        assert created.status_code == 201
        invitation_id = created.json()["data"]["id"]
        token = runtime.store.get_invitation(invitation_id).token

        client.cookies.clear()
        info = client.get("/v1/invitations/verify", params={"token": token})
        assert info.status_code == 200
        assert info.json()["data"]["email"] == "newbie@example.com"

        registered = client.post(
            "/v1/auth/complete-registration",
            json={"token": token, "password": "a long password", "first_name": "New", "surname": "Bie"},
        )
        assert registered.status_code == 201
        assert registered.json()["data"]["two_fa_enabled"] is True
        assert registered.json()["data"]["email_verified"] is True
        assert runtime.store.get_invitation(invitation_id).status == InvitationStatus.ACCEPTED

        replay = client.post(
            "/v1/auth/complete-registration",
            json={"token": token, "password": "a long password", "first_name": "New", "surname": "Bie"},
        )
        assert replay.status_code == 409
        assert _login(client, "newbie@example.com", "a long password").status_code == 200

    def test_duplicate_pending_invite_conflicts(self, client, runtime):
        _create_user(runtime, "admin@example.com", role="admin_team", organisation_id=None)
        _login(client, "admin@example.com")
        assert self._invite(client).status_code == 201
        assert self._invite(client).status_code == 409

    def test_referrer_admin_limited_to_own_organisation(self, client, runtime):
        _create_user(runtime, "lead@example.com", role="referrer_admin", organisation_id="org-1")
        _login(client, "lead@example.com")

        assert self._invite(client, organisation_id="org-2").status_code == 403
        assert self._invite(client, role="admin_team").status_code == 403
        assert self._invite(client).status_code == 201

    def test_referrer_team_cannot_invite(self, client, runtime):
        _create_user(runtime, "member@example.com", role="referrer_team")
        _login(client, "member@example.com")
        assert self._invite(client).status_code == 403

    def test_resend_issues_new_token(self, client, runtime):
        _create_user(runtime, "admin@example.com", role="super_admin", organisation_id=None)
        _login(client, "admin@example.com")
        invitation_id = self._invite(client).json()["data"]["id"]
        old_token = runtime.store.get_invitation(invitation_id).token

        resent = client.post(f"/v1/invitations/{invitation_id}/resend")
        assert resent.status_code == 200
        assert resent.json()["data"]["resent_count"] == 1
        assert runtime.store.get_invitation(invitation_id).token != old_token
        assert client.post(f"/v1/invitations/{invitation_id}/resend").status_code == 429

    def test_expired_invitation(self, client, runtime, clock):
        _create_user(runtime, "admin@example.com", role="super_admin", organisation_id=None)
        _login(client, "admin@example.com")
        invitation_id = self._invite(client).json()["data"]["id"]
        token = runtime.store.get_invitation(invitation_id).token
        clock.advance(timedelta(days=7, seconds=1))

        resp = client.get("/v1/invitations/verify", params={"token": token})
        assert resp.status_code == 400
        assert resp.json()["error"]["details"]["reason"] == "expired"


def test_healthz_reports_memory_store(client):
    body = client.get("/healthz").json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"


def test_runtime_is_shared(runtime):
    assert get_runtime() is runtime
