import logging
from urllib.parse import parse_qs, urlsplit

from sqlalchemy import func, select

from conftest import TEST_PASSWORD, make_site, make_user
from tsp_api.models import SiteUser


def _register(client, email="a.b@example.com", **extra):
    payload = {"email": email, "password": TEST_PASSWORD, "confirm_password": TEST_PASSWORD, **extra}
    return client.post("/Account/Register", json=payload)


def _user_count(db) -> int:
    return db.execute(select(func.count()).select_from(SiteUser)).scalar_one()


def test_register_signs_in_immediately_by_default(client, db, email_sender):
    make_site(db)

    response = _register(client)

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["outcome"] == "signed_in"
    assert body["data"]["access_token"]
    assert body["meta"]["redirect_url"] == "/"
    user = db.execute(select(SiteUser)).scalar_one()
    assert user.username == "abexamplecom"
    assert email_sender.sent == []


def test_register_requires_email_confirmation(client, db, email_sender):
    make_site(db, require_confirmed_email=True, require_approval_before_login=True)

    body = _register(client).json()

    user = db.execute(select(SiteUser)).scalar_one()
    assert body["data"]["outcome"] == "email_confirmation_required"
    assert "access_token" not in body["data"]
    assert body["meta"]["redirect_url"] == f"/Account/EmailConfirmationRequired?userId={user.id}&didSend=true"
    # 需确认邮箱优先于审批，只走一条路径。
    assert email_sender.kinds() == ["confirmation"]


def test_register_pending_approval_notifies_admins(client, db, email_sender):
    make_site(db, require_approval_before_login=True, account_approval_email_csv="admin@example.com")

    body = _register(client).json()

    user = db.execute(select(SiteUser)).scalar_one()
    assert body["data"]["outcome"] == "pending_approval"
    assert "access_token" not in body["data"]
    assert body["meta"]["redirect_url"] == f"/Account/PendingApproval?userId={user.id}&didSend=true"
    assert user.account_approved is False
    assert email_sender.kinds() == ["approval"]


def test_register_rejects_taken_derived_username(client, db):
    site = make_site(db)
    make_user(db, site, "abexamplecom", email="someone@example.com")

    response = _register(client)

    assert response.status_code == 422
    errors = response.json()["error"]["details"]["errors"]
    assert [item["field"] for item in errors] == ["username"]
    assert _user_count(db) == 1


def test_register_reports_all_errors_together(client, db, captcha):
    site = make_site(
        db,
        captcha_on_registration=True,
        recaptcha_public_key="pk",
        registration_agreement="Be nice.",
    )
    make_user(db, site, "taken", email="taken@example.com")
    captcha.success = False

    response = _register(client, username="taken", recaptcha_response="bad")

    assert response.status_code == 422
    details = response.json()["error"]["details"]
    assert details["view"] == "Register"
    assert {item["field"] for item in details["errors"]} == {"recaptcha", "agree_to_terms", "username"}
    assert _user_count(db) == 1


def test_register_disabled_returns_404(client, db):
    make_site(db, allow_new_registration=False)

    assert client.get("/Account/Register").status_code == 404
    assert _register(client).status_code == 404


def test_register_page_redirects_to_login_when_only_social_auth(client, db):
    make_site(db, disable_db_auth=True, social_auth_providers="google")

    body = client.get("/Account/Register").json()

    assert body["meta"]["redirect_url"] == "/Account/Login"


def test_register_page_model(client, db):
    make_site(db, registration_preamble="Welcome", registration_agreement="Terms")

    body = client.get("/Account/Register").json()

    assert body["meta"]["view"] == "Register"
    assert body["data"]["agreement_required"] is True
    assert body["data"]["registration_preamble"] == "Welcome"


def test_detached_send_failure_is_logged_and_response_unaffected(client, db, email_sender, caplog):
    make_site(db, require_confirmed_email=True)
    email_sender.fail = True

    with caplog.at_level(logging.ERROR, logger="tsp_api.background"):
        response = _register(client)

    assert response.status_code == 200
    assert response.json()["data"]["outcome"] == "email_confirmation_required"
    assert any("account confirmation email" in record.getMessage() for record in caplog.records)


def test_confirm_email_link(client, db, email_sender):
    make_site(db, require_confirmed_email=True)
    _register(client)
    _, fields = email_sender.sent[-1]

    response = client.get(fields["url"])

    assert response.status_code == 200
    assert response.json()["meta"]["view"] == "ConfirmEmail"
    db.expire_all()
    assert db.execute(select(SiteUser)).scalar_one().email_confirmed is True
    # 确认后安全戳轮换，同一链接不可重复使用。
    assert client.get(fields["url"]).status_code == 422


def test_confirm_email_with_pending_approval_notifies_and_redirects(client, db, email_sender):
    make_site(db, require_confirmed_email=True, require_approval_before_login=True)
    _register(client)
    _, fields = email_sender.sent[-1]
    user_id = parse_qs(urlsplit(fields["url"]).query)["userId"][0]

    response = client.get(fields["url"])

    assert response.json()["meta"]["redirect_url"] == f"/Account/PendingApproval?userId={user_id}&didSend=true"
    assert email_sender.kinds() == ["confirmation", "approval"]


def test_confirm_email_with_missing_code_shows_error(client, db):
    make_site(db)

    response = client.get("/Account/ConfirmEmail", params={"userId": "x"})

    assert response.status_code == 422
    assert response.json()["error"]["details"]["view"] == "Error"


def test_verify_email_resends_for_unconfirmed_user(client, db, email_sender):
    site = make_site(db)
    user = make_user(db, site, email_confirmed=False)
    confirmed = make_user(db, site, "bob")

    resend = client.post("/Account/VerifyEmail", json={"user_id": str(user.id)})
    skipped = client.post("/Account/VerifyEmail", json={"user_id": str(confirmed.id)})

    assert resend.json()["meta"]["redirect_url"] == f"/Account/EmailConfirmationRequired?userId={user.id}&didSend=true"
    assert skipped.json()["meta"]["redirect_url"] == "/"
    assert email_sender.kinds() == ["confirmation"]


def test_pending_notification_pages(client, db):
    make_site(db)

    pending = client.get("/Account/PendingApproval", params={"didSend": "true"}).json()
    confirmation = client.get("/Account/EmailConfirmationRequired").json()

    assert pending["meta"]["view"] == "PendingApproval"
    assert pending["data"]["did_send"] is True
    assert confirmation["meta"]["view"] == "EmailConfirmationRequired"
    assert confirmation["data"]["did_send"] is False


def test_username_available_returns_bare_boolean(client, db):
    site = make_site(db)
    alice = make_user(db, site)

    taken = client.post("/Account/UsernameAvailable", json={"user_name": "alice"})
    own = client.post("/Account/UsernameAvailable", json={"user_name": "alice", "user_id": str(alice.id)})
    free = client.post("/Account/UsernameAvailable", json={"user_name": "nobody"})

    assert taken.json() is False
    assert own.json() is True
    assert free.json() is True
