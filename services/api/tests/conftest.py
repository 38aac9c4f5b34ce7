from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import tsp_api.core.security as security_module
from tsp_api.core.config import get_settings
from tsp_api.db.session import get_db
from tsp_api.dependencies import get_captcha_verifier, get_email_sender, get_sms_sender
from tsp_api.main import app
from tsp_api.models import Site, SiteUser
from tsp_api.models.base import Base
from tsp_api.services.captcha import CaptchaResult
from tsp_api.services.local_auth import hash_password, new_security_stamp
from tsp_api.services.messaging import MessagingError

TEST_PASSWORD = "StrongPassw0rd!"


class FakeEmailSender:
    """记录发出的邮件，fail=True 时模拟投递失败。"""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.fail = False

    async def _record(self, kind: str, **fields: Any) -> None:
        if self.fail:
            raise MessagingError("smtp down")
        self.sent.append((kind, fields))

    async def send_account_confirmation_email(self, site, to_address, subject, confirmation_url):
        await self._record("confirmation", to=to_address, url=confirmation_url)

    async def send_password_reset_email(self, site, to_address, subject, reset_url):
        await self._record("reset", to=to_address, url=reset_url)

    async def send_security_code_email(self, site, to_address, subject, code):
        await self._record("security_code", to=to_address, code=code)

    async def account_pending_approval_admin_notification(self, site, user):
        await self._record("approval", user_id=str(user.id))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.sent]


class FakeSmsSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_sms(self, site, phone_number, message):
        self.sent.append((phone_number, message))


class FakeCaptchaVerifier:
    def __init__(self) -> None:
        self.success = True
        self.calls = 0

    def verify(self, secret, response_token, remote_ip):
        self.calls += 1
        return CaptchaResult(success=self.success and bool(response_token))


def _reset_runtime_auth_state() -> None:
    security_module._redis_client = None
    security_module._LOCAL_BLACKLIST.clear()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def sms_sender() -> FakeSmsSender:
    return FakeSmsSender()


@pytest.fixture
def captcha() -> FakeCaptchaVerifier:
    return FakeCaptchaVerifier()


@pytest.fixture
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker, None, None]:
    monkeypatch.setenv("TSP_AUTH_JWT_SECRET", "account-test-secret-key-at-least-32-bytes")
    monkeypatch.setenv("TSP_AUTH_JWT_ALGORITHMS", "HS256")
    monkeypatch.setenv("TSP_AUTH_PASSWORD_HASH_ITERATIONS", "1000")
    monkeypatch.delenv("TSP_REDIS_URL", raising=False)
    get_settings.cache_clear()
    _reset_runtime_auth_state()

    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)
    yield factory
    Base.metadata.drop_all(bind=engine)
    _reset_runtime_auth_state()
    get_settings.cache_clear()


@pytest.fixture
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(
    session_factory: sessionmaker,
    email_sender: FakeEmailSender,
    sms_sender: FakeSmsSender,
    captcha: FakeCaptchaVerifier,
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides.clear()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    app.dependency_overrides[get_sms_sender] = lambda: sms_sender
    app.dependency_overrides[get_captcha_verifier] = lambda: captcha
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_site(db: Session, alias_id: str = "s1", **overrides: Any) -> Site:
    values: dict[str, Any] = {
        "alias_id": alias_id,
        "site_name": f"Site {alias_id}",
        "use_email_for_login": True,
    }
    values.update(overrides)
    site = Site(**values)
    db.add(site)
    db.commit()
    return site


def make_user(db: Session, site: Site, username: str = "alice", **overrides: Any) -> SiteUser:
    values: dict[str, Any] = {
        "site_id": site.id,
        "username": username,
        "email": f"{username}@example.com",
        "display_name": username.title(),
        "password_hash": hash_password(TEST_PASSWORD),
        "security_stamp": new_security_stamp(),
        "email_confirmed": True,
        "account_approved": True,
    }
    values.update(overrides)
    user = SiteUser(**values)
    db.add(user)
    db.commit()
    return user
