"""账号管理协作方：查找、创建、确认、重置、双因素与锁定计数。

所有查询均限定在传入站点内；每个会改变账号状态的方法各自提交一次事务。
"""

from __future__ import annotations

import base64
from datetime import date, datetime, timedelta, timezone
import hashlib
import hmac
import logging
from uuid import UUID

import pyotp
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tsp_api.core.config import Settings
from tsp_api.exceptions import FieldError, ValidationFailure
from tsp_api.models.enums import TokenPurpose, TwoFactorProvider
from tsp_api.models.site import Site
from tsp_api.models.user import SiteUser, UserLogin
from tsp_api.services.local_auth import decode_token, hash_password, issue_token, new_security_stamp

logger = logging.getLogger("tsp_api.identity")


def derive_username(email: str, username: str | None = None) -> str:
    """显式用户名优先，否则去掉邮箱中全部 "@" 与 "." 作为用户名。"""
    if username and username.strip():
        return username.strip()
    return email.replace("@", "").replace(".", "")


def _as_utc(value: datetime) -> datetime:
    # SQLite 读回的时间不带时区。
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class UserManager:
    """站点账号存取与身份状态维护。"""

    def __init__(self, db: Session, settings: Settings) -> None:
        self._db = db
        self._settings = settings

    # 查询

    def find_by_id(self, site: Site, user_id: UUID | str | None) -> SiteUser | None:
        if user_id is None:
            return None
        try:
            key = user_id if isinstance(user_id, UUID) else UUID(str(user_id))
        except ValueError:
            return None
        return self._db.execute(
            select(SiteUser).where(SiteUser.site_id == site.id).where(SiteUser.id == key)
        ).scalar_one_or_none()

    def find_by_name(self, site: Site, name: str | None) -> SiteUser | None:
        """按登录名查找；站点以邮箱登录时回退按邮箱查找。"""
        if not name or not name.strip():
            return None
        normalized = name.strip().lower()
        user = self._db.execute(
            select(SiteUser)
            .where(SiteUser.site_id == site.id)
            .where(func.lower(SiteUser.username) == normalized)
        ).scalar_one_or_none()
        if user is not None or not site.use_email_for_login:
            return user
        return self.find_by_email(site, normalized)

    def find_by_email(self, site: Site, email: str) -> SiteUser | None:
        return (
            self._db.execute(
                select(SiteUser)
                .where(SiteUser.site_id == site.id)
                .where(func.lower(SiteUser.email) == email.strip().lower())
                .order_by(SiteUser.created_at)
            )
            .scalars()
            .first()
        )

    def find_by_login(self, site: Site, provider: str, provider_key: str) -> SiteUser | None:
        binding = self._db.execute(
            select(UserLogin)
            .where(UserLogin.site_id == site.id)
            .where(UserLogin.login_provider == provider)
            .where(UserLogin.provider_key == provider_key)
        ).scalar_one_or_none()
        if binding is None:
            return None
        return self.find_by_id(site, binding.user_id)

    def login_is_available(self, site: Site, user_id: UUID | None, login_name: str) -> bool:
        """登录名未被占用，或正被 user_id 指向的账号自己占用时可用。"""
        normalized = login_name.strip().lower()
        if not normalized:
            return False
        owner_id = self._db.execute(
            select(SiteUser.id)
            .where(SiteUser.site_id == site.id)
            .where(func.lower(SiteUser.username) == normalized)
        ).scalar_one_or_none()
        return owner_id is None or (user_id is not None and owner_id == user_id)

    # 创建与绑定

    def create(
        self,
        site: Site,
        *,
        username: str,
        email: str,
        password: str | None = None,
        display_name: str = "",
        first_name: str = "",
        last_name: str = "",
        date_of_birth: date | None = None,
        commit: bool = True,
    ) -> SiteUser:
        """创建账号；需审批的站点新账号默认未审批。commit=False 时只刷新到当前事务。"""
        errors: list[FieldError] = []
        if not self.login_is_available(site, None, username):
            errors.append(FieldError(field="username", message="用户名不可用，请换一个。"))
        if site.use_email_for_login and self.find_by_email(site, email) is not None:
            errors.append(FieldError(field="email", message="该邮箱已被使用。"))
        if errors:
            raise ValidationFailure(errors)

        user = SiteUser(
            site_id=site.id,
            username=username,
            email=email.strip(),
            display_name=display_name.strip() or username,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            date_of_birth=date_of_birth,
            password_hash=hash_password(password) if password else None,
            security_stamp=new_security_stamp(),
            account_approved=not site.require_approval_before_login,
        )
        self._db.add(user)
        self._db.flush()
        if commit:
            self._db.commit()
            logger.info("account created site=%s user=%s", site.alias_id, user.id)
        return user

    def create_with_login(
        self,
        site: Site,
        *,
        username: str,
        email: str,
        display_name: str,
        provider: str,
        provider_key: str,
        provider_display_name: str,
    ) -> SiteUser:
        """创建账号并绑定外部身份键，二者在同一事务内提交，任一步失败整体回滚。

        同一身份键在站点内只能绑定一个账号。
        """
        try:
            if self.find_by_login(site, provider, provider_key) is not None:
                raise ValidationFailure.single("provider_key", "该外部账号已绑定到其他用户。")
            user = self.create(site, username=username, email=email, display_name=display_name, commit=False)
            self._db.add(
                UserLogin(
                    site_id=site.id,
                    user_id=user.id,
                    login_provider=provider,
                    provider_key=provider_key,
                    provider_display_name=provider_display_name,
                )
            )
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        logger.info("account created site=%s user=%s provider=%s", site.alias_id, user.id, provider)
        return user

    # 邮箱确认与口令重置

    def generate_email_confirmation_token(self, user: SiteUser) -> str:
        return issue_token(
            TokenPurpose.CONFIRM_EMAIL,
            subject=str(user.id),
            site_id=user.site_id,
            ttl_seconds=self._settings.auth_confirm_email_ttl_seconds,
            stamp=user.security_stamp,
        ).token

    def confirm_email(self, user: SiteUser, token: str) -> bool:
        if not self._token_matches(user, token, TokenPurpose.CONFIRM_EMAIL):
            return False
        user.email_confirmed = True
        user.security_stamp = new_security_stamp()
        self._db.commit()
        return True

    def generate_password_reset_token(self, user: SiteUser) -> str:
        return issue_token(
            TokenPurpose.RESET_PASSWORD,
            subject=str(user.id),
            site_id=user.site_id,
            ttl_seconds=self._settings.auth_reset_password_ttl_seconds,
            stamp=user.security_stamp,
        ).token

    def reset_password(self, user: SiteUser, token: str, new_password: str) -> bool:
        if not self._token_matches(user, token, TokenPurpose.RESET_PASSWORD):
            return False
        user.password_hash = hash_password(new_password)
        user.security_stamp = new_security_stamp()
        self._db.commit()
        return True

    def _token_matches(self, user: SiteUser, token: str, purpose: TokenPurpose) -> bool:
        claims = decode_token(token, purpose, site_id=user.site_id)
        if claims is None:
            return False
        return claims.get("sub") == str(user.id) and hmac.compare_digest(
            str(claims.get("stamp", "")), user.security_stamp
        )

    # 双因素

    def valid_two_factor_providers(self, user: SiteUser) -> list[TwoFactorProvider]:
        providers: list[TwoFactorProvider] = []
        if user.email and user.email_confirmed:
            providers.append(TwoFactorProvider.EMAIL)
        if user.phone_number and user.phone_number_confirmed:
            providers.append(TwoFactorProvider.PHONE)
        return providers

    def _totp(self, user: SiteUser, provider: str) -> pyotp.TOTP:
        # 以安全戳派生密钥：安全戳轮换后旧验证码立即失效。
        key = hmac.new(
            self._settings.auth_jwt_secret.encode("utf-8"),
            f"{user.id}:{user.security_stamp}:{provider}".encode("utf-8"),
            hashlib.sha1,
        ).digest()
        secret = base64.b32encode(key).decode("ascii")
        return pyotp.TOTP(secret, interval=self._settings.auth_two_factor_code_step_seconds)

    def generate_two_factor_code(self, user: SiteUser, provider: str) -> str:
        """为可用通道生成一次性验证码，通道不可用时返回空串。"""
        if provider not in {str(item) for item in self.valid_two_factor_providers(user)}:
            return ""
        return self._totp(user, provider).now()

    def verify_two_factor_code(self, user: SiteUser, provider: str, code: str) -> bool:
        if provider not in {str(item) for item in self.valid_two_factor_providers(user)}:
            return False
        normalized = code.strip().replace(" ", "")
        if not normalized.isdigit():
            return False
        return self._totp(user, provider).verify(
            normalized, valid_window=self._settings.auth_two_factor_code_valid_window
        )

    # 锁定计数

    def is_locked_out(self, user: SiteUser) -> bool:
        return user.lockout_end is not None and _as_utc(user.lockout_end) > datetime.now(timezone.utc)

    def access_failed(self, user: SiteUser) -> None:
        """累计失败次数，达到阈值后进入锁定窗口并清零计数。"""
        user.access_failed_count += 1
        if user.access_failed_count >= self._settings.auth_lockout_max_failed_attempts:
            user.lockout_end = datetime.now(timezone.utc) + timedelta(minutes=self._settings.auth_lockout_minutes)
            user.access_failed_count = 0
            logger.warning("account locked out user=%s", user.id)
        self._db.commit()

    def reset_access_failed_count(self, user: SiteUser) -> None:
        if user.access_failed_count:
            user.access_failed_count = 0
            self._db.commit()

    def record_login(self, user: SiteUser) -> None:
        user.last_login_at = datetime.now(timezone.utc)
        self._db.commit()
