from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from conftest import TEST_PASSWORD, make_site, make_user
from tsp_api.core.config import get_settings
from tsp_api.exceptions import ValidationFailure
from tsp_api.models import SiteUser, UserLogin
from tsp_api.models.enums import SignInResult, TwoFactorProvider
from tsp_api.services.identity import UserManager, derive_username
from tsp_api.services.sign_in import SignInManager


def test_derive_username_strips_at_and_dots():
    assert derive_username("a.b@example.com") == "abexamplecom"
    assert derive_username("a.b@example.com") == derive_username("a.b@example.com")
    assert derive_username("a.b@example.com", "  chosen ") == "chosen"
    assert derive_username("a.b@example.com", "   ") == "abexamplecom"


def test_login_is_available_allows_owner(db):
    site = make_site(db)
    alice = make_user(db, site, "alice")
    users = UserManager(db, get_settings())

    assert users.login_is_available(site, None, "nobody")
    assert not users.login_is_available(site, None, "alice")
    assert not users.login_is_available(site, None, "ALICE")
    assert users.login_is_available(site, alice.id, "alice")
    assert not users.login_is_available(site, None, "   ")


def test_lookups_are_site_scoped(db):
    site_a = make_site(db, "s1")
    site_b = make_site(db, "s2", hostname="b.example.com")
    make_user(db, site_a, "alice")
    users = UserManager(db, get_settings())

    assert users.find_by_name(site_a, "alice") is not None
    assert users.find_by_name(site_b, "alice") is None
    assert users.login_is_available(site_b, None, "alice")


def test_find_by_name_falls_back_to_email_only_when_site_logs_in_by_email(db):
    email_site = make_site(db, "s1", use_email_for_login=True)
    name_site = make_site(db, "s2", use_email_for_login=False)
    make_user(db, email_site, "alice")
    make_user(db, name_site, "alice")
    users = UserManager(db, get_settings())

    assert users.find_by_name(email_site, "Alice@Example.com") is not None
    assert users.find_by_name(name_site, "alice@example.com") is None


def test_create_rejects_taken_username_without_creating(db):
    site = make_site(db)
    make_user(db, site, "abexamplecom", email="first@example.com")
    users = UserManager(db, get_settings())

    with pytest.raises(ValidationFailure) as exc_info:
        users.create(site, username="abexamplecom", email="a.b@example.com", password=TEST_PASSWORD)

    assert [item.field for item in exc_info.value.errors] == ["username"]
    assert db.execute(select(func.count()).select_from(SiteUser)).scalar_one() == 1


def _bind(users, site, username="carol", email="carol@example.com"):
    return users.create_with_login(
        site,
        username=username,
        email=email,
        display_name="Carol",
        provider="google",
        provider_key="google-123",
        provider_display_name="Google",
    )


def test_create_with_login_binds_in_one_transaction(db):
    site = make_site(db)
    users = UserManager(db, get_settings())

    user = _bind(users, site)

    assert users.find_by_login(site, "google", "google-123").id == user.id


def test_create_with_login_rejects_bound_key_without_creating(db):
    site = make_site(db)
    users = UserManager(db, get_settings())
    _bind(users, site)

    with pytest.raises(ValidationFailure):
        _bind(users, site, username="carol2", email="carol2@example.com")

    assert db.execute(select(func.count()).select_from(SiteUser)).scalar_one() == 1
    assert db.execute(select(func.count()).select_from(UserLogin)).scalar_one() == 1


def test_create_with_login_rolls_back_on_conflict(db):
    site = make_site(db)
    make_user(db, site, "carol", email="other@example.com")
    users = UserManager(db, get_settings())

    with pytest.raises(ValidationFailure):
        _bind(users, site)

    assert db.execute(select(func.count()).select_from(SiteUser)).scalar_one() == 1
    assert db.execute(select(func.count()).select_from(UserLogin)).scalar_one() == 0


def test_create_marks_account_unapproved_when_site_requires_approval(db):
    site = make_site(db, require_approval_before_login=True)
    users = UserManager(db, get_settings())

    user = users.create(site, username="carol", email="carol@example.com", password=TEST_PASSWORD)

    assert user.account_approved is False
    assert user.password_hash and user.password_hash != TEST_PASSWORD


def test_access_failed_locks_at_threshold_and_resets_count(db):
    site = make_site(db)
    user = make_user(db, site)
    settings = get_settings()
    users = UserManager(db, settings)

    for _ in range(settings.auth_lockout_max_failed_attempts - 1):
        users.access_failed(user)
    assert not users.is_locked_out(user)

    users.access_failed(user)

    assert users.is_locked_out(user)
    assert user.access_failed_count == 0


def test_expired_lockout_window_is_not_locked(db):
    site = make_site(db)
    user = make_user(db, site, lockout_end=datetime.now(timezone.utc) - timedelta(minutes=1))

    assert not UserManager(db, get_settings()).is_locked_out(user)


def test_password_reset_token_is_single_use(db):
    site = make_site(db)
    user = make_user(db, site)
    users = UserManager(db, get_settings())

    token = users.generate_password_reset_token(user)

    assert users.reset_password(user, token, "AnotherPassw0rd!")
    assert not users.reset_password(user, token, "ThirdPassw0rd!")


def test_two_factor_providers_follow_confirmed_channels(db):
    site = make_site(db)
    users = UserManager(db, get_settings())
    both = make_user(db, site, "both", phone_number="+15550100", phone_number_confirmed=True)
    unconfirmed = make_user(db, site, "none", email_confirmed=False, phone_number="+15550101")

    assert users.valid_two_factor_providers(both) == [TwoFactorProvider.EMAIL, TwoFactorProvider.PHONE]
    assert users.valid_two_factor_providers(unconfirmed) == []
    assert users.generate_two_factor_code(unconfirmed, "Email") == ""


def test_two_factor_code_round_trip_and_stamp_rotation(db):
    site = make_site(db)
    user = make_user(db, site)
    users = UserManager(db, get_settings())

    code = users.generate_two_factor_code(user, "Email")

    assert len(code) == 6
    assert users.verify_two_factor_code(user, "Email", code)
    assert not users.verify_two_factor_code(user, "Phone", code)
    assert not users.verify_two_factor_code(user, "Email", "abc")

    users.reset_password(user, users.generate_password_reset_token(user), "AnotherPassw0rd!")
    assert not users.verify_two_factor_code(user, "Email", code)


@pytest.mark.parametrize(
    "overrides",
    [
        {"email_confirmed": False},
        {"account_approved": False},
        {"is_locked_out": True},
        {"is_deleted": True},
    ],
)
def test_password_sign_in_not_allowed_when_policy_blocks(db, overrides):
    site = make_site(db, require_confirmed_email=True, require_approval_before_login=True)
    make_user(db, site, **overrides)
    sign_in = SignInManager(UserManager(db, get_settings()), get_settings())

    attempt = sign_in.password_sign_in(site, "alice@example.com", TEST_PASSWORD, persistent=False)

    assert attempt.result is SignInResult.NOT_ALLOWED
    assert attempt.session is None


def test_wrong_password_does_not_count_toward_lockout(db):
    site = make_site(db)
    user = make_user(db, site)
    sign_in = SignInManager(UserManager(db, get_settings()), get_settings())

    for _ in range(get_settings().auth_lockout_max_failed_attempts + 1):
        attempt = sign_in.password_sign_in(site, "alice", "wrong-password", persistent=False)
        assert attempt.result is SignInResult.FAILED

    assert user.access_failed_count == 0
    assert user.lockout_end is None
