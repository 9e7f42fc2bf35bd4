"""
tests/test_users_routes.py -- Integration tests for /api/v1/users routes.

Coverage:
  - Registration: 201 + user directory created, duplicate login 409,
    input validation (names, email, password strength, 72-byte limit) 422,
    CAPTCHA 400, account removed again when its directory cannot be made
  - Profile: GET/PATCH own profile, other user's profile 403, empty patch 400
  - Login entries and trusted devices: create/list/upsert/delete, ownership
  - Password reset: generic answer for unknown login, email sent with a link
    carrying the token and expiry, confirm is single-use, old password stops
    working, second request invalidates the first token, an over-long new
    password is 422 and leaves the token usable
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from api.routes.v1.users import reset_link
from core.errors import StorageError
from conftest import STRONG_PASSWORD, register, register_and_login, unique_login


def _register_body(**overrides) -> dict:
    body = {
        "first_name": "Anne-Marie",
        "last_name": "O'Neil",
        "login": unique_login(),
        "password": STRONG_PASSWORD,
        "captcha_token": "ok",
    }
    body.update(overrides)
    return body


class TestRegister:
    def test_register_creates_account_and_directory(self, api_client: TestClient) -> None:
        body = _register_body()
        resp = api_client.post("/api/v1/users", json=body)
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["first_name"] == "Anne-Marie"
        assert data["login"] == body["login"]
        assert "password" not in data
        files_root = api_client.app.state.file_store.root
        assert (files_root / data["id"]).is_dir()

    def test_duplicate_login_is_409(self, api_client: TestClient) -> None:
        login = unique_login()
        register(api_client, login)
        resp = api_client.post("/api/v1/users", json=_register_body(login=login))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"first_name": "R2D2"},
            {"last_name": ""},
            {"first_name": "x" * 51},
            {"login": "not-an-email"},
            {"login": "a" * 45 + "@example.com"},
            {"password": "Sh0rt!"},
            {"password": "alllowercase1!"},
            {"password": "ALLUPPERCASE1!"},
            {"password": "NoDigits!!"},
            {"password": "NoSymbols123"},
            {"password": "Aa1!" + "x" * 61},
            {"password": "Aa1!" + "ż" * 35},
        ],
    )
    def test_invalid_input_is_422(self, api_client: TestClient, overrides: dict) -> None:
        resp = api_client.post("/api/v1/users", json=_register_body(**overrides))
        assert resp.status_code == 422, resp.text

    def test_unicode_names_accepted(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/users", json=_register_body(first_name="Łucja", last_name="Żółć"))
        assert resp.status_code == 201, resp.text

    def test_multibyte_password_within_bcrypt_limit_logs_in(self, api_client: TestClient) -> None:
        # 34 characters, 64 bytes
        password = "Aa1!" + "ż" * 30
        login = unique_login()
        resp = api_client.post("/api/v1/users", json=_register_body(login=login, password=password))
        assert resp.status_code == 201, resp.text
        creds = {"login": login, "password": password, "captcha_token": "ok"}
        assert api_client.post("/api/v1/auth/login", json=creds).status_code == 200
        api_client.cookies.clear()

    def test_directory_failure_releases_login(self, api_client: TestClient) -> None:
        body = _register_body()
        file_store = api_client.app.state.file_store
        with patch.object(file_store, "ensure_user_dir", side_effect=StorageError()):
            resp = api_client.post("/api/v1/users", json=body)
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "internal_error"
        assert api_client.app.state.account_store.get_by_login(body["login"]) is None

        retry = api_client.post("/api/v1/users", json=body)
        assert retry.status_code == 201, retry.text

    def test_failed_captcha_is_400(self, api_client: TestClient) -> None:
        state = api_client.app.state
        state.captcha.validate.return_value = False
        try:
            body = _register_body()
            resp = api_client.post("/api/v1/users", json=body)
        finally:
            state.captcha.validate.return_value = True
        assert resp.status_code == 400
        assert state.account_store.get_by_login(body["login"]) is None


class TestProfile:
    def test_get_own_profile(self, api_client: TestClient) -> None:
        user_id, login, headers = register_and_login(api_client)
        resp = api_client.get(f"/api/v1/users/{user_id}", headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"id": user_id, "first_name": "Test", "last_name": "User", "login": login}

    def test_other_users_profile_is_403(self, api_client: TestClient) -> None:
        _uid, _login, headers = register_and_login(api_client)
        other = register(api_client)
        resp = api_client.get(f"/api/v1/users/{other}", headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_requires_auth(self, api_client: TestClient) -> None:
        other = register(api_client)
        assert api_client.get(f"/api/v1/users/{other}").status_code == 401

    def test_patch_names(self, api_client: TestClient) -> None:
        user_id, _login, headers = register_and_login(api_client)
        resp = api_client.patch(f"/api/v1/users/{user_id}", json={"first_name": "Renamed"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["first_name"] == "Renamed"
        assert resp.json()["last_name"] == "User"

    def test_patch_password(self, api_client: TestClient) -> None:
        user_id, login, headers = register_and_login(api_client)
        resp = api_client.patch(f"/api/v1/users/{user_id}", json={"password": "N3w!Password"}, headers=headers)
        assert resp.status_code == 200
        login_body = {"login": login, "password": "N3w!Password", "captcha_token": "ok"}
        assert api_client.post("/api/v1/auth/login", json=login_body).status_code == 200
        api_client.cookies.clear()

    def test_empty_patch_is_400(self, api_client: TestClient) -> None:
        user_id, _login, headers = register_and_login(api_client)
        resp = api_client.patch(f"/api/v1/users/{user_id}", json={}, headers=headers)
        assert resp.status_code == 400

    def test_weak_password_patch_is_422(self, api_client: TestClient) -> None:
        user_id, _login, headers = register_and_login(api_client)
        resp = api_client.patch(f"/api/v1/users/{user_id}", json={"password": "weak"}, headers=headers)
        assert resp.status_code == 422

    def test_over_long_multibyte_password_patch_is_422(self, api_client: TestClient) -> None:
        user_id, login, headers = register_and_login(api_client)
        resp = api_client.patch(f"/api/v1/users/{user_id}", json={"password": "Aa1!" + "ż" * 35}, headers=headers)
        assert resp.status_code == 422
        creds = {"login": login, "password": STRONG_PASSWORD, "captcha_token": "ok"}
        assert api_client.post("/api/v1/auth/login", json=creds).status_code == 200
        api_client.cookies.clear()


class TestLoginEntries:
    def test_create_and_list_newest_first(self, api_client: TestClient) -> None:
        user_id, _login, headers = register_and_login(api_client)
        url = f"/api/v1/users/{user_id}/logins"
        first = api_client.post(url, json={"login": "me@github.com", "page": "github"}, headers=headers)
        second = api_client.post(url, json={"login": "me@gitlab.com", "page": "gitlab"}, headers=headers)
        assert first.status_code == second.status_code == 201
        assert first.json()["timestamp"]

        entries = api_client.get(url, headers=headers).json()
        assert [e["page"] for e in entries] == ["gitlab", "github"]

    def test_entry_login_must_be_email(self, api_client: TestClient) -> None:
        user_id, _login, headers = register_and_login(api_client)
        resp = api_client.post(
            f"/api/v1/users/{user_id}/logins", json={"login": "nope", "page": "github"}, headers=headers
        )
        assert resp.status_code == 422

    def test_other_users_entries_are_403(self, api_client: TestClient) -> None:
        _uid, _login, headers = register_and_login(api_client)
        other = register(api_client)
        assert api_client.get(f"/api/v1/users/{other}/logins", headers=headers).status_code == 403


class TestTrustedDevices:
    def test_upsert_list_delete(self, api_client: TestClient) -> None:
        user_id, _login, headers = register_and_login(api_client)
        url = f"/api/v1/users/{user_id}/trusted-devices"

        resp = api_client.patch(url, json={"device_id": "laptop", "user_agent": "UA/1"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"device_id": "laptop", "user_agent": "UA/1", "is_trusted": False}

        api_client.patch(url, json={"device_id": "laptop", "user_agent": "UA/2", "is_trusted": True}, headers=headers)
        devices = api_client.get(url, headers=headers).json()
        assert devices == [{"device_id": "laptop", "user_agent": "UA/2", "is_trusted": True}]

        assert api_client.delete(f"{url}/laptop", headers=headers).status_code == 200
        assert api_client.get(url, headers=headers).json() == []

    def test_delete_unknown_device_is_404(self, api_client: TestClient) -> None:
        user_id, _login, headers = register_and_login(api_client)
        resp = api_client.delete(f"/api/v1/users/{user_id}/trusted-devices/nope", headers=headers)
        assert resp.status_code == 404


class TestPasswordReset:
    def _request(self, client: TestClient, login: str):
        return client.post("/api/v1/users/reset-password", json={"login": login, "captcha_token": "ok"})

    def test_unknown_login_gets_generic_answer_and_no_mail(self, api_client: TestClient) -> None:
        known = unique_login()
        register(api_client, known)
        mailer = api_client.app.state.mailer
        mailer.send_reset_email.reset_mock()

        unknown_resp = self._request(api_client, unique_login())
        assert unknown_resp.status_code == 200
        mailer.send_reset_email.assert_not_called()

        known_resp = self._request(api_client, known)
        assert known_resp.json() == unknown_resp.json()
        mailer.send_reset_email.assert_called_once()

    def test_failed_captcha_is_400(self, api_client: TestClient) -> None:
        state = api_client.app.state
        state.captcha.validate.return_value = False
        try:
            resp = self._request(api_client, unique_login())
        finally:
            state.captcha.validate.return_value = True
        assert resp.status_code == 400

    def _token_from_mail(self, client: TestClient, login: str) -> str:
        mailer = client.app.state.mailer
        mailer.send_reset_email.reset_mock()
        assert self._request(client, login).status_code == 200
        to, link = mailer.send_reset_email.call_args.args
        assert to == login
        match = re.fullmatch(
            r"http://localhost:5173/reset-password/([0-9a-f]{64})\?exp=\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", link
        )
        assert match, link
        return match.group(1)

    def test_full_reset_flow(self, api_client: TestClient) -> None:
        login = unique_login()
        register(api_client, login)
        token = self._token_from_mail(api_client, login)

        confirm = {"reset_token": token, "new_password": "Res3t!Password"}
        resp = api_client.post("/api/v1/users/reset-password/confirm", json=confirm)
        assert resp.status_code == 200, resp.text

        again = api_client.post("/api/v1/users/reset-password/confirm", json=confirm)
        assert again.status_code == 401

        old = {"login": login, "password": STRONG_PASSWORD, "captcha_token": "ok"}
        new = {"login": login, "password": "Res3t!Password", "captcha_token": "ok"}
        assert api_client.post("/api/v1/auth/login", json=old).status_code == 401
        assert api_client.post("/api/v1/auth/login", json=new).status_code == 200
        api_client.cookies.clear()

    def test_second_request_invalidates_first_token(self, api_client: TestClient) -> None:
        login = unique_login()
        register(api_client, login)
        first = self._token_from_mail(api_client, login)
        second = self._token_from_mail(api_client, login)
        assert first != second

        stale = {"reset_token": first, "new_password": "Res3t!Password"}
        assert api_client.post("/api/v1/users/reset-password/confirm", json=stale).status_code == 401
        fresh = {"reset_token": second, "new_password": "Res3t!Password"}
        assert api_client.post("/api/v1/users/reset-password/confirm", json=fresh).status_code == 200

    def test_weak_new_password_is_422_and_token_survives(self, api_client: TestClient) -> None:
        login = unique_login()
        register(api_client, login)
        token = self._token_from_mail(api_client, login)
        weak = {"reset_token": token, "new_password": "weak"}
        assert api_client.post("/api/v1/users/reset-password/confirm", json=weak).status_code == 422
        assert api_client.app.state.token_issuer.verify_reset_token(token) is not None

    def test_over_long_multibyte_password_is_422_and_token_survives(self, api_client: TestClient) -> None:
        login = unique_login()
        register(api_client, login)
        token = self._token_from_mail(api_client, login)
        # 39 characters but 74 bytes
        too_long = {"reset_token": token, "new_password": "Aa1!" + "ż" * 35}
        resp = api_client.post("/api/v1/users/reset-password/confirm", json=too_long)
        assert resp.status_code == 422
        assert api_client.app.state.token_issuer.verify_reset_token(token) is not None

        fine = {"reset_token": token, "new_password": "Res3t!Password"}
        assert api_client.post("/api/v1/users/reset-password/confirm", json=fine).status_code == 200


def test_reset_link_format() -> None:
    link = reset_link("http://app/reset/", "ab" * 32, datetime(2024, 5, 1, 22, 0, tzinfo=timezone.utc))
    assert link == f"http://app/reset/{'ab' * 32}?exp=2024-05-01T22:00:00.000Z"
