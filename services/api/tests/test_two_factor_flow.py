import jwt

from conftest import TEST_PASSWORD, make_site, make_user
from tsp_api.core.config import get_settings
from tsp_api.exceptions import INVALID_CODE_MESSAGE


def _start(client, *, remember_browser_token=None, remember_me=False):
    headers = {"X-Remember-Browser-Token": remember_browser_token} if remember_browser_token else None
    response = client.post(
        "/Account/Login",
        json={"email": "alice@example.com", "password": TEST_PASSWORD, "remember_me": remember_me},
        params={"returnUrl": "/dashboard"},
        headers=headers,
    )
    assert response.status_code == 200
    return response.json()


def _send_code(client, token, provider="Email"):
    return client.post(
        "/Account/SendCode",
        json={"selected_provider": provider, "remember_me": True},
        params={"returnUrl": "/dashboard"},
        headers={"X-Two-Factor-Token": token},
    )


def _verify(client, token, code, provider="Email", **extra):
    return client.post(
        "/Account/VerifyCode",
        json={"provider": provider, "code": code, "remember_me": True, **extra},
        params={"returnUrl": "/dashboard"},
        headers={"X-Two-Factor-Token": token},
    )


def _wrong(code: str) -> str:
    return str((int(code) + 500000) % 1000000).zfill(6)


def _last_code(email_sender) -> str:
    kind, fields = email_sender.sent[-1]
    assert kind == "security_code"
    return fields["code"]


def test_send_code_page_lists_confirmed_channels(client, db):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True, phone_number="+15550001", phone_number_confirmed=True)
    token = _start(client)["data"]["two_factor_token"]

    body = client.get(
        "/Account/SendCode",
        params={"returnUrl": "/dashboard", "rememberMe": "true"},
        headers={"X-Two-Factor-Token": token},
    ).json()

    assert body["meta"]["view"] == "SendCode"
    assert body["data"]["providers"] == ["Email", "Phone"]
    assert body["data"]["remember_me"] is True


def test_email_code_round_trip_issues_persistent_session(client, db, email_sender):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True)
    token = _start(client, remember_me=True)["data"]["two_factor_token"]

    sent = _send_code(client, token)

    assert sent.status_code == 200
    assert sent.json()["meta"]["redirect_url"] == (
        "/Account/VerifyCode?provider=Email&returnUrl=%2Fdashboard&rememberMe=true"
    )
    page = client.get(
        "/Account/VerifyCode",
        params={"provider": "Email", "returnUrl": "/dashboard"},
        headers={"X-Two-Factor-Token": token},
    )
    assert page.json()["meta"]["view"] == "VerifyCode"

    verified = _verify(client, token, _last_code(email_sender))

    assert verified.status_code == 200
    body = verified.json()
    assert body["meta"]["redirect_url"] == "/dashboard"
    settings = get_settings()
    claims = jwt.decode(
        body["data"]["access_token"], settings.auth_jwt_secret, algorithms=["HS256"], issuer=settings.auth_jwt_issuer
    )
    assert claims["purpose"] == "session"
    assert claims["persistent"] is True
    assert body["data"]["remember_browser_token"] is None


def test_wrong_code_is_rejected_without_session(client, db, email_sender):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True)
    token = _start(client)["data"]["two_factor_token"]
    _send_code(client, token)

    response = _verify(client, token, _wrong(_last_code(email_sender)))

    assert response.status_code == 422
    details = response.json()["error"]["details"]
    assert details["view"] == "VerifyCode"
    assert details["errors"] == [{"field": "code", "message": INVALID_CODE_MESSAGE}]
    assert "access_token" not in response.text


def test_repeated_wrong_codes_lock_the_account(client, db, email_sender):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True)
    token = _start(client)["data"]["two_factor_token"]
    _send_code(client, token)
    code = _last_code(email_sender)

    statuses = [_verify(client, token, _wrong(code)).status_code for _ in range(5)]

    assert statuses == [422, 422, 422, 422, 423]
    locked = _verify(client, token, code)
    assert locked.status_code == 423
    assert locked.json()["error"]["code"] == "LOCKED_OUT"


def test_phone_channel_sends_sms(client, db, sms_sender, email_sender):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True, phone_number="+15550001", phone_number_confirmed=True)
    token = _start(client)["data"]["two_factor_token"]

    response = _send_code(client, token, provider="Phone")

    assert response.status_code == 200
    assert email_sender.sent == []
    phone, message = sms_sender.sent[0]
    assert phone == "+15550001"
    assert message.startswith("Your security code is: ")
    code = message.rsplit(" ", 1)[-1]
    assert _verify(client, token, code, provider="Phone").status_code == 200


def test_unavailable_channel_or_delivery_failure_shows_error(client, db, email_sender):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True)
    token = _start(client)["data"]["two_factor_token"]

    no_phone = _send_code(client, token, provider="Phone")
    email_sender.fail = True
    smtp_down = _send_code(client, token)

    for response in (no_phone, smtp_down):
        assert response.status_code == 502
        assert response.json()["error"]["details"]["view"] == "Error"


def test_remembered_browser_skips_second_factor(client, db, email_sender):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True)
    token = _start(client)["data"]["two_factor_token"]
    _send_code(client, token)
    verified = _verify(client, token, _last_code(email_sender), remember_browser=True).json()
    remember_token = verified["data"]["remember_browser_token"]

    body = _start(client, remember_browser_token=remember_token)

    assert body["data"]["access_token"]
    assert body["meta"]["redirect_url"] == "/dashboard"


def test_missing_or_foreign_two_factor_token_shows_error(client, db):
    site = make_site(db)
    make_user(db, site, two_factor_enabled=True)
    make_site(db, "s2")
    token = _start(client)["data"]["two_factor_token"]

    missing = client.get("/Account/SendCode")
    foreign = client.get("/Account/VerifyCode", headers={"X-Two-Factor-Token": token, "X-Site-Alias": "s2"})

    for response in (missing, foreign):
        assert response.status_code == 422
        assert response.json()["error"]["details"]["view"] == "Error"
