"""
tests/test_api_routes.py -- Integration tests for the auth, users and keys routes.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> AuthService / KeyLifecycleEngine -> stores -> response model
serialization -> ErrorResponse envelope. Unit tests of the engines live in
their own modules; here we check the HTTP contract.

Coverage:
  - Auth failures: 401 without a token, with a forged token, with a wrong code
  - Code login flow: simple-auth -> login -> me -> refresh -> logout
  - Error mapping: 400 / 401 / 403 / 404 / 409 / 422 / 423 with {"error": {...}}
  - Users: scoped listing, self-service limits, role changes
  - Keys: create, assign, return, maintenance, incidents, overdue, history

Fixtures used (from conftest.py):
  - api_client: ApiContext(client, admin_token, admin_id, notifier, clock)
    Module-scoped, so tests below share one database; every test uses its
    own email addresses and key ids.
"""

from __future__ import annotations

from auth.models import OTPPurpose
from auth.tokens import COOKIE_NAME
from conftest import ApiContext
from core.models import Role


def _error(resp) -> dict:
    body = resp.json()
    assert "error" in body, f"Expected error envelope, got {body}"
    return body["error"]


def _login(ctx: ApiContext, email: str) -> tuple[str, dict]:
    """Run simple-auth + login for email and return (token, login body).

    The cookie the login route sets is cleared so later unauthenticated
    requests in the module stay unauthenticated.
    """
    resp = ctx.client.post("/api/v1/auth/simple-auth", json={"email": email})
    assert resp.status_code == 200, resp.text
    code = ctx.notifier.last_code(email)
    resp = ctx.client.post("/api/v1/auth/login", json={"email": email, "otp": code})
    assert resp.status_code == 200, resp.text
    ctx.client.cookies.clear()
    body = resp.json()
    return body["access_token"], body


class TestAuthFailure:
    """Unauthenticated or badly authenticated requests must be refused."""

    def test_me_without_token(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert _error(resp)["code"] == "unauthorized"

    def test_keys_without_token(self, api_client: ApiContext) -> None:
        assert api_client.client.get("/api/v1/keys").status_code == 401
        assert api_client.client.post("/api/v1/keys", json={}).status_code in (401, 422)

    def test_forged_token(self, api_client: ApiContext) -> None:
        header, payload, _sig = api_client.admin_token.split(".")
        forged = f"{header}.{payload}.AAAA"
        resp = api_client.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {forged}"})
        assert resp.status_code == 401
        assert _error(resp)["code"] == "invalid_signature"

    def test_garbage_token(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert resp.status_code == 401
        assert _error(resp)["code"] == "malformed"

    def test_validate_session_is_soft(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/auth/validate-session")
        assert resp.status_code == 200
        assert resp.json() == {"is_authenticated": False, "identity": None}


class TestAuthFlow:
    """One-time-code login and session routes."""

    def test_simple_auth_creates_identity(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/v1/auth/simple-auth", json={"email": "Cse.Newbie@College.edu"})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["created"] is True
        assert data["delivered"] is True
        assert data["purpose"] == "login"
        assert data["identity"]["email"] == "cse.newbie@college.edu"
        assert data["identity"]["department"] == "Computer Science and Engineering"
        assert "code" not in data

    def test_login_sets_cookie_and_returns_token(self, api_client: ApiContext) -> None:
        client = api_client.client
        client.post("/api/v1/auth/simple-auth", json={"email": "cookie.user@college.edu"})
        code = api_client.notifier.last_code("cookie.user@college.edu")
        resp = client.post("/api/v1/auth/login", json={"email": "cookie.user@college.edu", "otp": code})
        try:
            assert resp.status_code == 200, resp.text
            assert resp.headers["cache-control"] == "no-store"
            assert COOKIE_NAME in resp.cookies
            data = resp.json()
            assert data["token_type"] == "bearer"
            assert data["identity"]["role"] == "faculty"

            # The cookie alone authenticates.
            me = client.get("/api/v1/auth/me")
            assert me.status_code == 200
            assert me.json()["email"] == "cookie.user@college.edu"
        finally:
            client.cookies.clear()

    def test_me_refresh_permissions(self, api_client: ApiContext) -> None:
        token, _ = _login(api_client, "flow.user@college.edu")
        headers = api_client.headers(token)
        client = api_client.client

        assert client.get("/api/v1/auth/me", headers=headers).json()["email"] == "flow.user@college.edu"

        refreshed = client.post("/api/v1/auth/refresh", headers=headers)
        client.cookies.clear()
        assert refreshed.status_code == 200
        assert refreshed.json()["access_token"]

        perms = client.get("/api/v1/auth/permissions", headers=headers).json()
        assert perms["role"] == "faculty"
        assert perms["level"] == 1
        assert "keys:request" in perms["capabilities"]

        access = client.get("/api/v1/auth/access", params={"path": "/admin/users"}, headers=headers).json()
        assert access["allowed"] is False

    def test_validate_session_with_token(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/auth/validate-session", headers=api_client.headers())
        data = resp.json()
        assert data["is_authenticated"] is True
        assert data["identity"]["role"] == "admin"

    def test_logout_invalidates_pending_codes(self, api_client: ApiContext) -> None:
        client = api_client.client
        token, _ = _login(api_client, "logout.user@college.edu")
        client.post("/api/v1/auth/request-otp", json={"email": "logout.user@college.edu"})
        pending = api_client.notifier.last_code("logout.user@college.edu")
        assert client.post("/api/v1/auth/logout", headers=api_client.headers(token)).status_code == 200
        resp = client.post("/api/v1/auth/login", json={"email": "logout.user@college.edu", "otp": pending})
        assert resp.status_code == 401
        assert _error(resp)["code"] == "no_challenge"

    def test_wrong_code(self, api_client: ApiContext) -> None:
        client = api_client.client
        client.post("/api/v1/auth/simple-auth", json={"email": "typo.user@college.edu"})
        code = api_client.notifier.last_code("typo.user@college.edu")
        wrong = "000000" if code != "000000" else "111111"
        resp = client.post("/api/v1/auth/login", json={"email": "typo.user@college.edu", "otp": wrong})
        assert resp.status_code == 401
        assert _error(resp)["code"] == "mismatch"

    def test_lockout_returns_423(self, api_client: ApiContext) -> None:
        client = api_client.client
        email = "locked.user@college.edu"
        client.post("/api/v1/auth/simple-auth", json={"email": email})
        code = api_client.notifier.last_code(email)
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(5):
            client.post("/api/v1/auth/login", json={"email": email, "otp": wrong})
        resp = client.post("/api/v1/auth/login", json={"email": email, "otp": code})
        assert resp.status_code == 423
        assert _error(resp)["code"] == "account_locked"

    def test_otp_window_returns_429(self, api_client: ApiContext) -> None:
        client = api_client.client
        email = "eager.user@college.edu"
        for _ in range(3):
            assert client.post("/api/v1/auth/simple-auth", json={"email": email}).status_code == 200
        resp = client.post("/api/v1/auth/simple-auth", json={"email": email})
        assert resp.status_code == 429
        assert _error(resp)["code"] == "otp_window"

    def test_register_and_verify(self, api_client: ApiContext) -> None:
        client = api_client.client
        email = "new.faculty@college.edu"
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": email, "name": "New Faculty", "department": "Physics"},
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["identity"]["is_email_verified"] is False
        code = api_client.notifier.last_code(email, purpose=OTPPurpose.email_verification)
        verified = client.post("/api/v1/auth/verify-otp", json={"email": email, "otp": code})
        assert verified.status_code == 200
        assert verified.json()["is_email_verified"] is True

    def test_register_privileged_role(self, api_client: ApiContext) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register",
            json={"email": "wannabe@college.edu", "name": "W", "department": "Physics", "role": "admin"},
        )
        assert resp.status_code == 403
        assert _error(resp)["code"] == "role_requires_approval"

    def test_register_duplicate(self, api_client: ApiContext) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register",
            json={"email": "admin@college.edu", "name": "Dup", "department": "Physics"},
        )
        assert resp.status_code == 409

    def test_request_validation(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"email": "x@college.edu", "otp": "abc"})
        assert resp.status_code == 422
        assert _error(resp)["code"] == "validation_error"

    def test_stats_admin_only(self, api_client: ApiContext) -> None:
        client = api_client.client
        resp = client.get("/api/v1/auth/stats", headers=api_client.headers())
        assert resp.status_code == 200
        assert "otp" in resp.json()
        faculty = api_client.create_identity("stats.peeker@college.edu")
        denied = client.get("/api/v1/auth/stats", headers=api_client.headers(api_client.token_for(faculty)))
        assert denied.status_code == 403


class TestUserRoutes:
    """Identity administration."""

    def test_admin_lists_everyone(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/users", headers=api_client.headers())
        assert resp.status_code == 200
        emails = {u["email"] for u in resp.json()}
        assert "admin@college.edu" in emails

    def test_hod_sees_own_department_faculty(self, api_client: ApiContext) -> None:
        hod = api_client.create_identity("chem.hod@college.edu", role=Role.hod, department="Chemistry")
        api_client.create_identity("chem.one@college.edu", department="Chemistry")
        api_client.create_identity("bio.one@college.edu", department="Biology")
        resp = api_client.client.get("/api/v1/users", headers=api_client.headers(api_client.token_for(hod)))
        emails = {u["email"] for u in resp.json()}
        assert "chem.one@college.edu" in emails
        assert "bio.one@college.edu" not in emails
        assert "admin@college.edu" not in emails

    def test_faculty_cannot_list(self, api_client: ApiContext) -> None:
        faculty = api_client.create_identity("nosy.one@college.edu")
        resp = api_client.client.get("/api/v1/users", headers=api_client.headers(api_client.token_for(faculty)))
        assert resp.status_code == 403

    def test_self_service_name_only(self, api_client: ApiContext) -> None:
        me = api_client.create_identity("self.edit@college.edu")
        headers = api_client.headers(api_client.token_for(me))
        ok = api_client.client.patch(f"/api/v1/users/{me.id}", json={"name": "Self Edited"}, headers=headers)
        assert ok.status_code == 200
        assert ok.json()["name"] == "Self Edited"
        denied = api_client.client.patch(f"/api/v1/users/{me.id}", json={"role": "admin"}, headers=headers)
        assert denied.status_code == 403

    def test_admin_promotes_and_role_takes_effect(self, api_client: ApiContext) -> None:
        target = api_client.create_identity("promote.me@college.edu")
        old_token = api_client.token_for(target)
        resp = api_client.client.patch(
            f"/api/v1/users/{target.id}", json={"role": "hod"}, headers=api_client.headers()
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "hod"
        # Tokens carry the old role, but authorization uses the stored one.
        perms = api_client.client.get("/api/v1/auth/permissions", headers=api_client.headers(old_token)).json()
        assert perms["role"] == "hod"

    def test_hod_cannot_grant_higher_role(self, api_client: ApiContext) -> None:
        hod = api_client.create_identity("grant.hod@college.edu", role=Role.hod, department="Physics")
        faculty = api_client.create_identity("grant.target@college.edu", department="Physics")
        resp = api_client.client.patch(
            f"/api/v1/users/{faculty.id}",
            json={"role": "admin"},
            headers=api_client.headers(api_client.token_for(hod)),
        )
        assert resp.status_code == 403

    def test_hod_cannot_edit_other_departments_faculty(self, api_client: ApiContext) -> None:
        hod = api_client.create_identity("civil.hod@college.edu", role=Role.hod, department="Civil")
        outsider = api_client.create_identity("mech.one@college.edu", department="Mechanical")
        headers = api_client.headers(api_client.token_for(hod))
        client = api_client.client

        assert client.get(f"/api/v1/users/{outsider.id}", headers=headers).status_code == 404
        resp = client.patch(
            f"/api/v1/users/{outsider.id}",
            json={"is_active": False, "department": "Civil"},
            headers=headers,
        )
        assert resp.status_code == 404

        unchanged = client.get(f"/api/v1/users/{outsider.id}", headers=api_client.headers()).json()
        assert unchanged["is_active"] is True
        assert unchanged["department"] == "Mechanical"

    def test_hod_edits_own_department_but_cannot_move_out(self, api_client: ApiContext) -> None:
        hod = api_client.create_identity("arch.hod@college.edu", role=Role.hod, department="Architecture")
        member = api_client.create_identity("arch.one@college.edu", department="Architecture")
        headers = api_client.headers(api_client.token_for(hod))
        client = api_client.client

        renamed = client.patch(f"/api/v1/users/{member.id}", json={"name": "Arch One"}, headers=headers)
        assert renamed.status_code == 200
        assert renamed.json()["name"] == "Arch One"

        moved = client.patch(f"/api/v1/users/{member.id}", json={"department": "Physics"}, headers=headers)
        assert moved.status_code == 403
        stored = client.get(f"/api/v1/users/{member.id}", headers=api_client.headers()).json()
        assert stored["department"] == "Architecture"

    def test_get_unknown_user(self, api_client: ApiContext) -> None:
        assert api_client.client.get("/api/v1/users/99999", headers=api_client.headers()).status_code == 404

    def test_deactivated_user_is_refused(self, api_client: ApiContext) -> None:
        target = api_client.create_identity("leaving.soon@college.edu")
        token = api_client.token_for(target)
        api_client.client.patch(f"/api/v1/users/{target.id}", json={"is_active": False}, headers=api_client.headers())
        resp = api_client.client.get("/api/v1/auth/me", headers=api_client.headers(token))
        assert resp.status_code == 403
        assert _error(resp)["code"] == "account_deactivated"

    def test_delete_user(self, api_client: ApiContext) -> None:
        target = api_client.create_identity("delete.me@college.edu")
        client = api_client.client
        assert client.delete(f"/api/v1/users/{target.id}", headers=api_client.headers()).status_code == 204
        assert client.get(f"/api/v1/users/{target.id}", headers=api_client.headers()).status_code == 404
        self_delete = client.delete(f"/api/v1/users/{api_client.admin_id}", headers=api_client.headers())
        assert self_delete.status_code == 400

    def test_roles_summary(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/users/roles/summary", headers=api_client.headers())
        assert resp.status_code == 200
        assert resp.json()["admin"]["total"] >= 1


class TestKeyRoutes:
    """Key lifecycle over HTTP."""

    def _create(self, ctx: ApiContext, key_id: str, department: str = "Physics", **extra) -> dict:
        body = {"key_id": key_id, "name": f"{key_id} room", "department": department, **extra}
        resp = ctx.client.post("/api/v1/keys", json=body, headers=ctx.headers())
        assert resp.status_code == 201, resp.text
        return resp.json()

    def test_create_and_get(self, api_client: ApiContext) -> None:
        key = self._create(api_client, "PHY-101", category="laboratory", max_allowed_minutes=120)
        assert key["status"] == "available"
        assert key["qr_code"] == "PHY-101-QR"
        assert key["version"] == 0
        resp = api_client.client.get("/api/v1/keys/phy-101", headers=api_client.headers())
        assert resp.status_code == 200
        assert resp.json()["category"] == "laboratory"

    def test_create_duplicate(self, api_client: ApiContext) -> None:
        self._create(api_client, "DUP-1")
        resp = api_client.client.post(
            "/api/v1/keys", json={"key_id": "DUP-1", "name": "x", "department": "Physics"}, headers=api_client.headers()
        )
        assert resp.status_code == 409
        assert _error(resp)["code"] == "key_id_taken"

    def test_create_invalid_id(self, api_client: ApiContext) -> None:
        resp = api_client.client.post(
            "/api/v1/keys", json={"key_id": "bad id", "name": "x", "department": "Physics"}, headers=api_client.headers()
        )
        assert resp.status_code == 400
        assert _error(resp)["code"] == "invalid_key_id"

    def test_faculty_cannot_create(self, api_client: ApiContext) -> None:
        faculty = api_client.create_identity("key.maker@college.edu", department="Physics")
        resp = api_client.client.post(
            "/api/v1/keys",
            json={"key_id": "NOPE-1", "name": "x", "department": "Physics"},
            headers=api_client.headers(api_client.token_for(faculty)),
        )
        assert resp.status_code == 403

    def test_self_request_and_return(self, api_client: ApiContext) -> None:
        self._create(api_client, "PHY-202", max_allowed_minutes=60)
        faculty = api_client.create_identity("borrower@college.edu", department="Physics")
        headers = api_client.headers(api_client.token_for(faculty))
        client = api_client.client

        resp = client.post("/api/v1/keys/PHY-202/assign", json={"purpose": "Lab exam"}, headers=headers)
        assert resp.status_code == 200, resp.text
        key = resp.json()
        assert key["status"] == "assigned"
        assert key["assignment"]["holder_id"] == faculty.id
        assert key["assignment"]["purpose"] == "Lab exam"
        assert key["minutes_remaining"] == 60
        assert key["is_overdue"] is False

        mine = client.get("/api/v1/keys/mine", headers=headers).json()
        assert [k["key_id"] for k in mine] == ["PHY-202"]

        again = client.post("/api/v1/keys/PHY-202/assign", json={}, headers=api_client.headers())
        assert again.status_code == 409
        assert _error(again)["code"] == "key_assigned"

        returned = client.post("/api/v1/keys/PHY-202/return", headers=headers)
        assert returned.status_code == 200
        assert returned.json()["assignment"] is None

        history = client.get("/api/v1/keys/PHY-202/history", headers=api_client.headers()).json()
        assert [e["action"] for e in history] == ["returned", "assigned", "created"]

    def test_security_assigns_to_holder(self, api_client: ApiContext) -> None:
        self._create(api_client, "GATE-1", department="Security")
        guard = api_client.create_identity("gate.guard@college.edu", role=Role.security, department="Security")
        holder = api_client.create_identity("visitor.prof@college.edu", department="Chemistry")
        resp = api_client.client.post(
            "/api/v1/keys/GATE-1/assign",
            json={"holder_id": holder.id, "duration_minutes": 30},
            headers=api_client.headers(api_client.token_for(guard)),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["assignment"]["holder_id"] == holder.id

    def test_assign_to_unknown_holder(self, api_client: ApiContext) -> None:
        self._create(api_client, "GATE-2", department="Security")
        resp = api_client.client.post(
            "/api/v1/keys/GATE-2/assign", json={"holder_id": 99999}, headers=api_client.headers()
        )
        assert resp.status_code == 404
        assert _error(resp)["code"] == "holder_not_found"

    def test_faculty_cannot_see_other_departments_key(self, api_client: ApiContext) -> None:
        self._create(api_client, "CHEM-9", department="Chemistry")
        faculty = api_client.create_identity("curious@college.edu", department="Physics")
        resp = api_client.client.get("/api/v1/keys/CHEM-9", headers=api_client.headers(api_client.token_for(faculty)))
        assert resp.status_code == 404

    def test_maintenance_and_incident(self, api_client: ApiContext) -> None:
        self._create(api_client, "STORE-1")
        client = api_client.client
        headers = api_client.headers()

        resp = client.post("/api/v1/keys/STORE-1/maintenance", json={"notes": "Rekey"}, headers=headers)
        assert resp.json()["status"] == "maintenance"
        assert resp.json()["maintenance_notes"] == "Rekey"
        assert client.post("/api/v1/keys/STORE-1/available", headers=headers).json()["status"] == "available"

        lost = client.post("/api/v1/keys/STORE-1/incident", json={"status": "lost"}, headers=headers)
        assert lost.json()["status"] == "lost"
        twice = client.post("/api/v1/keys/STORE-1/incident", json={"status": "damaged"}, headers=headers)
        assert twice.status_code == 409
        bad = client.post("/api/v1/keys/STORE-1/incident", json={"status": "stolen"}, headers=headers)
        assert bad.status_code == 422

    def test_update_and_deactivate(self, api_client: ApiContext) -> None:
        self._create(api_client, "OLD-1")
        client = api_client.client
        headers = api_client.headers()
        patched = client.patch("/api/v1/keys/OLD-1", json={"location": "Annex"}, headers=headers)
        assert patched.status_code == 200
        assert patched.json()["location"] == "Annex"
        assert client.patch("/api/v1/keys/OLD-1", json={}, headers=headers).status_code == 400

        client.post("/api/v1/keys/OLD-1/assign", json={}, headers=headers)
        assert client.delete("/api/v1/keys/OLD-1", headers=headers).status_code == 409
        client.post("/api/v1/keys/OLD-1/return", headers=headers)
        assert client.delete("/api/v1/keys/OLD-1", headers=headers).status_code == 204
        assert client.get("/api/v1/keys/OLD-1", headers=headers).status_code == 404

    def test_list_filters(self, api_client: ApiContext) -> None:
        self._create(api_client, "BIO-1", department="Biology", category="laboratory")
        self._create(api_client, "BIO-2", department="Biology", category="office")
        resp = api_client.client.get(
            "/api/v1/keys", params={"department": "Biology", "category": "laboratory"}, headers=api_client.headers()
        )
        assert [k["key_id"] for k in resp.json()] == ["BIO-1"]

    def test_overdue_and_stats(self, api_client: ApiContext) -> None:
        self._create(api_client, "LATE-1", department="History")
        client = api_client.client
        headers = api_client.headers()
        client.post("/api/v1/keys/LATE-1/assign", json={"duration_minutes": 30}, headers=headers)

        api_client.clock.advance(minutes=45)
        overdue = client.get("/api/v1/keys/overdue", headers=headers).json()
        late = next(k for k in overdue if k["key_id"] == "LATE-1")
        assert late["is_overdue"] is True
        assert late["minutes_remaining"] == -15

        stats = client.get("/api/v1/keys/stats", headers=headers).json()
        assert stats["by_department"]["History"]["overdue"] == 1
        assert stats["by_department"]["History"]["assigned"] == 1
