from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from hallcall.services import otp


@pytest.fixture(autouse=True)
def no_email():
    with patch("hallcall.services.otp.send_via_resend", new=AsyncMock(return_value={"id": "em_1"})) as sender:
        yield sender


def _latest_code(store, table, email):
    rows = store.select(table, [("eq", "email", email)], order="created_at", desc=True)
    return rows[0]


def test_issue_code_invalidates_previous(store):
    first = otp.issue_code(store, otp.SIGNUP_TABLE, "a@example.com")
    second = otp.issue_code(store, otp.SIGNUP_TABLE, "a@example.com")
    assert len(second) == 6 and second.isdigit()
    rows = store.select(otp.SIGNUP_TABLE, [("eq", "email", "a@example.com"), ("eq", "used", False)])
    assert [r["code"] for r in rows] == [second]
    if first != second:
        assert otp.consume_code(store, otp.SIGNUP_TABLE, "a@example.com", first) is None


@pytest.mark.parametrize("drawn,code", [(0, "100000"), (899999, "999999"), (42, "100042")])
def test_codes_come_from_the_system_csprng(drawn, code):
    with patch.object(otp.secrets, "randbelow", return_value=drawn) as randbelow:
        assert otp.generate_code() == code
    randbelow.assert_called_once_with(900000)


def test_code_is_single_use(store):
    code = otp.issue_code(store, otp.RESET_TABLE, "a@example.com")
    assert otp.consume_code(store, otp.RESET_TABLE, "a@example.com", code) is not None
    assert otp.consume_code(store, otp.RESET_TABLE, "a@example.com", code) is None


def test_code_expires_after_ten_minutes(store):
    issued_at = datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc)
    code = otp.issue_code(store, otp.RESET_TABLE, "a@example.com", now=issued_at)
    late = issued_at + timedelta(minutes=10, seconds=1)
    assert otp.consume_code(store, otp.RESET_TABLE, "a@example.com", code, now=late) is None
    assert otp.consume_code(store, otp.RESET_TABLE, "a@example.com", code,
                            now=issued_at + timedelta(minutes=9)) is not None


def test_signup_flow_creates_account_and_profile(client, store, no_email):
    response = client.post("/api/auth/signup/send-code",
                           json={"email": "new@example.com", "password": "hunter22", "fullName": "Ada"})
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Code envoye"}
    no_email.assert_awaited_once()
    assert no_email.await_args.args[0] == "new@example.com"

    code = _latest_code(store, otp.SIGNUP_TABLE, "new@example.com")["code"]
    response = client.post("/api/auth/signup/verify",
                           json={"email": "new@example.com", "code": code, "password": "hunter22"})
    assert response.status_code == 200
    user = response.json()["user"]
    assert user["email"] == "new@example.com"
    profile = store.get_profile(user["id"])
    assert profile["plan"] == "free" and profile["minutes_limit"] == 60

    replay = client.post("/api/auth/signup/verify",
                         json={"email": "new@example.com", "code": code, "password": "hunter22"})
    assert replay.status_code == 400
    assert replay.json() == {"error": "Code invalide ou expire"}


def test_signup_requires_email_and_password(client):
    response = client.post("/api/auth/signup/send-code", json={"email": "x@example.com"})
    assert response.status_code == 400
    assert response.json() == {"error": "Email et mot de passe requis"}


def test_signup_rejects_existing_account(client, user):
    response = client.post("/api/auth/signup/send-code",
                           json={"email": "owner@example.com", "password": "whatever"})
    assert response.status_code == 400
    assert response.json()["error"] == "Un compte avec cet email existe deja"


def test_signup_verify_rejects_other_password(client, store):
    client.post("/api/auth/signup/send-code", json={"email": "new@example.com", "password": "hunter22"})
    code = _latest_code(store, otp.SIGNUP_TABLE, "new@example.com")["code"]
    response = client.post("/api/auth/signup/verify",
                           json={"email": "new@example.com", "code": code, "password": "other"})
    assert response.status_code == 400
    assert store.find_user_by_email("new@example.com") is None


def test_password_reset_flow(client, store, user):
    response = client.post("/api/auth/password/send-code", json={"email": "owner@example.com"})
    assert response.json()["success"] is True
    code = _latest_code(store, otp.RESET_TABLE, "owner@example.com")["code"]

    short = client.post("/api/auth/password/reset",
                        json={"email": "owner@example.com", "code": code, "newPassword": "123"})
    assert short.status_code == 400

    response = client.post("/api/auth/password/reset",
                           json={"email": "owner@example.com", "code": code, "newPassword": "brandnew"})
    assert response.status_code == 200
    assert store.users[user["id"]]["password_hash"] == otp.hash_password("brandnew")


def test_password_code_for_unknown_email_is_silent(client, store, no_email):
    response = client.post("/api/auth/password/send-code", json={"email": "ghost@example.com"})
    assert response.status_code == 200
    no_email.assert_not_awaited()
    assert store.select(otp.RESET_TABLE, []) == []


def test_protected_routes_require_bearer_token(client):
    response = client.get("/api/profile")
    assert response.status_code == 401
    assert response.json() == {"error": "Non autorise"}


def test_profile_reports_remaining_minutes(client, store, user, auth_headers):
    store.get_profile(user["id"], user["email"])
    store.add_minutes_used(user["id"], 25)
    body = client.get("/api/profile", headers=auth_headers).json()
    assert body["profile"]["minutes_used"] == 25
    assert body["minutes_remaining"] == 35
