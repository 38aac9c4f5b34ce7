import jwt
import pytest
from sqlalchemy import select

from conftest import TEST_PASSWORD, make_site, make_user
from tsp_api.core.config import get_settings
from tsp_api.exceptions import INVALID_LOGIN_MESSAGE
from tsp_api.models import UserLocation


def _login(client, email="alice@example.com", password=TEST_PASSWORD, **extra):
    params = extra.pop("params", None)
    headers = extra.pop("headers", None)
    payload = {"email": email, "password": password, **extra}
    return client.post("/Account/Login", json=payload, params=params, headers=headers)


def _claims(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.auth_jwt_secret, algorithms=["HS256"], issuer=settings.auth_jwt_issuer)


def test_login_page_model(client, db):
    make_site(
        db,
        captcha_on_login=True,
        recaptcha_public_key="public-key",
        login_info_top="top",
        disable_db_auth=True,
    )

    response = client.get("/Account/Login", params={"returnUrl": "/after"})

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["view"] == "Login"
    assert body["data"]["recaptcha_site_key"] == "public-key"
    assert body["data"]["login_info_top"] == "top"
    assert body["data"]["return_url"] == "/after"
    # 未启用社交登录时不会真正关闭本地登录。
    assert body["data"]["disable_db_auth"] is False


def test_login_success_issues_session_and_tracks_ip(client, db):
    site = make_site(db)
    user = make_user(db, site)

    response = _login(client, params={"returnUrl": "/dashboard"}, headers={"X-Forwarded-For": "203.0.113.7"})

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["redirect_url"] == "/dashboard"
    claims = _claims(body["data"]["access_token"])
    assert claims["sub"] == str(user.id)
    assert claims["purpose"] == "session"
    assert claims["sid"] == str(site.id)
    location = db.execute(select(UserLocation).where(UserLocation.user_id == user.id)).scalar_one()
    assert location.ip_address == "203.0.113.7"
    assert location.capture_count == 1

    _login(client, headers={"X-Forwarded-For": "203.0.113.7"})
    db.expire_all()
    assert db.execute(select(UserLocation).where(UserLocation.user_id == user.id)).scalar_one().capture_count == 2


@pytest.mark.parametrize("return_url", [
        "https://evil.example.com/",
        "//evil.example.com",
        "/\\evil.example.com",
        "~//evil.example.com",
        "~/\\evil.example.com",
    ])
def test_non_local_return_url_falls_back_to_site_root(client, db, return_url):
    site = make_site(db)
    make_user(db, site)

    response = _login(client, params={"returnUrl": return_url})

    assert response.json()["meta"]["redirect_url"] == "/"


def test_folder_site_root(client, db):
    site = make_site(db, site_folder_name="club")
    make_user(db, site)

    assert _login(client).json()["meta"]["redirect_url"] == "/club"


def test_wrong_password_and_unknown_user_share_generic_failure(client, db):
    site = make_site(db)
    make_user(db, site)

    wrong = _login(client, password="wrong-password")
    unknown = _login(client, email="nobody@example.com")

    for response in (wrong, unknown):
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "INVALID_LOGIN"
        assert error["message"] == INVALID_LOGIN_MESSAGE
        assert error["details"]["view"] == "Login"


@pytest.mark.parametrize(
    ("site_overrides", "user_overrides"),
    [
        ({"require_confirmed_email": True}, {"email_confirmed": False}),
        ({"require_approval_before_login": True}, {"account_approved": False}),
        ({}, {"is_locked_out": True}),
        ({}, {"is_deleted": True}),
    ],
)
def test_policy_gates_reject_correct_credentials_generically(client, db, site_overrides, user_overrides):
    site = make_site(db, **site_overrides)
    make_user(db, site, **user_overrides)

    response = _login(client)

    assert response.status_code == 401
    assert response.json()["error"]["message"] == INVALID_LOGIN_MESSAGE
    assert "access_token" not in response.text


def test_username_login_mode_reads_username(client, db):
    site = make_site(db, use_email_for_login=False)
    make_user(db, site)

    by_email = client.post("/Account/Login", json={"email": "alice@example.com", "password": TEST_PASSWORD})
    by_name = client.post("/Account/Login", json={"username": "alice", "password": TEST_PASSWORD})

    assert by_email.status_code == 401
    assert by_name.status_code == 200


def test_persistent_login_only_when_site_allows(client, db):
    site = make_site(db, allow_persistent_login=False)
    make_user(db, site)

    body = _login(client, remember_me=True).json()

    assert _claims(body["data"]["access_token"])["persistent"] is False


def test_captcha_checked_before_credentials(client, db, captcha):
    site = make_site(db, captcha_on_login=True, recaptcha_public_key="pk", recaptcha_private_key="sk")
    make_user(db, site)
    captcha.success = False

    rejected = _login(client, recaptcha_response="bad")

    assert rejected.status_code == 422
    assert rejected.json()["error"]["details"]["errors"][0]["field"] == "recaptcha"

    captcha.success = True
    assert _login(client, recaptcha_response="good").status_code == 200


def test_two_factor_account_hands_off_to_send_code(client, db):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True)

    response = _login(client, remember_me=True, params={"returnUrl": "/dashboard"})

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["redirect_url"] == "/Account/SendCode?returnUrl=%2Fdashboard&rememberMe=true"
    assert "access_token" not in body["data"]
    assert _claims(body["data"]["two_factor_token"])["purpose"] == "two_factor"


def test_signed_in_user_is_redirected_from_login_page(client, db):
    site = make_site(db)
    make_user(db, site)
    token = _login(client).json()["data"]["access_token"]

    response = client.get("/Account/Login", headers={"Authorization": f"Bearer {token}"})

    assert response.json()["meta"]["redirect_url"] == "/"


def test_log_off_revokes_session(client, db):
    site = make_site(db)
    make_user(db, site)
    token = _login(client).json()["data"]["access_token"]
    headers = {"Authorization": f"Bearer {token}"}

    log_off = client.post("/Account/LogOff", headers=headers)

    assert log_off.status_code == 200
    assert log_off.json()["data"]["revoked"] is True
    assert log_off.json()["meta"]["redirect_url"] == "/"
    assert client.get("/Account/Login", headers=headers).json()["meta"]["view"] == "Login"


def test_session_from_another_site_is_ignored(client, db):
    site = make_site(db)
    make_site(db, "s2")
    make_user(db, site)
    token = _login(client).json()["data"]["access_token"]

    response = client.get(
        "/Account/Login",
        headers={"Authorization": f"Bearer {token}", "X-Site-Alias": "s2"},
    )

    assert response.json()["meta"]["view"] == "Login"
