"""登录协作方：口令登录、外部登录、双因素登录与会话签发。"""

from __future__ import annotations

from dataclasses import dataclass
import hmac
import logging

from tsp_api.core.config import Settings
from tsp_api.core.security import AuthenticatedSession, revoke_token_jti
from tsp_api.models.enums import SignInResult, TokenPurpose
from tsp_api.models.site import Site
from tsp_api.models.user import SiteUser
from tsp_api.services.identity import UserManager
from tsp_api.services.local_auth import IssuedToken, decode_token, issue_session_token, issue_token, verify_password

logger = logging.getLogger("tsp_api.sign_in")


@dataclass
class SignInAttempt:
    """一次登录尝试的结果及随附凭证。"""

    result: SignInResult
    user: SiteUser | None = None
    session: IssuedToken | None = None
    two_factor_token: str | None = None
    remember_browser_token: str | None = None


@dataclass
class ExternalScheme:
    """站点可用的外部登录方式。"""

    name: str
    display_name: str


class SignInManager:
    """串联账号状态检查、口令校验、第二因素与会话签发。"""

    def __init__(self, users: UserManager, settings: Settings) -> None:
        self._users = users
        self._settings = settings

    def can_sign_in(self, site: Site, user: SiteUser) -> bool:
        if site.require_confirmed_email and not user.email_confirmed:
            return False
        if site.require_approval_before_login and not user.account_approved:
            return False
        return not (user.is_locked_out or user.is_deleted)

    def password_sign_in(
        self,
        site: Site,
        name: str,
        password: str,
        *,
        persistent: bool,
        remember_browser_token: str | None = None,
    ) -> SignInAttempt:
        """口令登录；口令错误不计入锁定次数。"""
        user = self._users.find_by_name(site, name)
        if user is None:
            return SignInAttempt(SignInResult.FAILED)
        if not self.can_sign_in(site, user):
            return SignInAttempt(SignInResult.NOT_ALLOWED, user=user)
        if self._users.is_locked_out(user):
            return SignInAttempt(SignInResult.LOCKED_OUT, user=user)
        if not verify_password(password, user.password_hash):
            return SignInAttempt(SignInResult.FAILED, user=user)
        return self._sign_in_or_two_factor(site, user, persistent=persistent, remember_token=remember_browser_token)

    def external_login_sign_in(
        self,
        site: Site,
        provider: str,
        provider_key: str,
        *,
        persistent: bool = False,
    ) -> SignInAttempt:
        """按外部身份键登录，未绑定账号时返回 FAILED。"""
        user = self._users.find_by_login(site, provider, provider_key)
        if user is None:
            return SignInAttempt(SignInResult.FAILED)
        if not self.can_sign_in(site, user):
            return SignInAttempt(SignInResult.NOT_ALLOWED, user=user)
        if self._users.is_locked_out(user):
            return SignInAttempt(SignInResult.LOCKED_OUT, user=user)
        return self._sign_in_or_two_factor(site, user, persistent=persistent, remember_token=None)

    def _sign_in_or_two_factor(
        self,
        site: Site,
        user: SiteUser,
        *,
        persistent: bool,
        remember_token: str | None,
    ) -> SignInAttempt:
        if (
            user.two_factor_enabled
            and self._users.valid_two_factor_providers(user)
            and not self.is_browser_remembered(site, user, remember_token)
        ):
            pending = issue_token(
                TokenPurpose.TWO_FACTOR,
                subject=str(user.id),
                site_id=site.id,
                ttl_seconds=self._settings.auth_two_factor_ttl_seconds,
                stamp=user.security_stamp,
                extra={"persistent": persistent},
            )
            return SignInAttempt(SignInResult.REQUIRES_TWO_FACTOR, user=user, two_factor_token=pending.token)
        return SignInAttempt(SignInResult.SUCCESS, user=user, session=self.sign_in(user, persistent=persistent))

    def sign_in(self, user: SiteUser, *, persistent: bool) -> IssuedToken:
        """签发会话并记录最近登录时间。"""
        self._users.record_login(user)
        return issue_session_token(user, persistent=persistent)

    def sign_out(self, session: AuthenticatedSession) -> bool:
        """吊销当前会话令牌。"""
        jti = session.claims.get("jti")
        exp = session.claims.get("exp")
        if isinstance(jti, str) and jti and isinstance(exp, int):
            revoke_token_jti(jti, exp)
            return True
        return False

    def get_two_factor_user(self, site: Site, two_factor_token: str | None) -> SiteUser | None:
        """取回已通过主凭据、待第二因素的账号，令牌无效时返回 None。"""
        if not two_factor_token:
            return None
        claims = decode_token(two_factor_token, TokenPurpose.TWO_FACTOR, site_id=site.id)
        if claims is None:
            return None
        user = self._users.find_by_id(site, claims.get("sub"))
        if user is None or not hmac.compare_digest(str(claims.get("stamp", "")), user.security_stamp):
            return None
        return user

    def two_factor_sign_in(
        self,
        site: Site,
        two_factor_token: str | None,
        provider: str,
        code: str,
        *,
        persistent: bool,
        remember_browser: bool,
    ) -> SignInAttempt:
        """校验第二因素；错误验证码计入锁定次数。"""
        user = self.get_two_factor_user(site, two_factor_token)
        if user is None:
            return SignInAttempt(SignInResult.FAILED)
        if self._users.is_locked_out(user):
            return SignInAttempt(SignInResult.LOCKED_OUT, user=user)

        if self._users.verify_two_factor_code(user, provider, code):
            self._users.reset_access_failed_count(user)
            remember_token = None
            if remember_browser:
                remember_token = issue_token(
                    TokenPurpose.TWO_FACTOR_REMEMBER,
                    subject=str(user.id),
                    site_id=site.id,
                    ttl_seconds=self._settings.auth_remember_browser_ttl_seconds,
                    stamp=user.security_stamp,
                ).token
            return SignInAttempt(
                SignInResult.SUCCESS,
                user=user,
                session=self.sign_in(user, persistent=persistent),
                remember_browser_token=remember_token,
            )

        self._users.access_failed(user)
        if self._users.is_locked_out(user):
            return SignInAttempt(SignInResult.LOCKED_OUT, user=user)
        return SignInAttempt(SignInResult.FAILED, user=user)

    def is_browser_remembered(self, site: Site, user: SiteUser, token: str | None) -> bool:
        if not token:
            return False
        claims = decode_token(token, TokenPurpose.TWO_FACTOR_REMEMBER, site_id=site.id)
        return bool(
            claims
            and claims.get("sub") == str(user.id)
            and hmac.compare_digest(str(claims.get("stamp", "")), user.security_stamp)
        )

    def external_schemes(self, site: Site) -> list[ExternalScheme]:
        """站点已启用且服务端已配置的外部登录方式。"""
        configured = self._settings.external_providers
        return [
            ExternalScheme(name=name, display_name=configured[name].display_name or name)
            for name in site.enabled_social_providers
            if name in configured
        ]
