"""口令登录协调：验证码、登录闸门、口令校验与登录后跳转。"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import assert_never

from tsp_api.exceptions import AuthenticationFailure, LockedOutFailure
from tsp_api.models.enums import SignInResult
from tsp_api.models.site import Site
from tsp_api.models.user import SiteUser
from tsp_api.services.captcha import RecaptchaVerifier, ensure_captcha
from tsp_api.services.identity import UserManager
from tsp_api.services.ip_tracking import IpAddressTracker
from tsp_api.services.local_auth import IssuedToken
from tsp_api.services.sign_in import SignInManager
from tsp_api.services.site_context import account_url, local_redirect_target

logger = logging.getLogger("tsp_api.login")


@dataclass
class LoginOutcome:
    """登录成功或进入第二因素阶段后的跳转信息。"""

    redirect_url: str
    session: IssuedToken | None = None
    two_factor_token: str | None = None


class SessionCoordinator:
    """口令登录流程。

    登录闸门（邮箱未确认、未审批、已锁定或已删除）与口令错误返回同一个
    登录无效提示。闸门失败与口令校验的耗时差异仍可能暴露账号是否存在。
    """

    def __init__(
        self,
        users: UserManager,
        sign_in: SignInManager,
        captcha: RecaptchaVerifier,
        ip_tracker: IpAddressTracker,
    ) -> None:
        self._users = users
        self._sign_in = sign_in
        self._captcha = captcha
        self._ip_tracker = ip_tracker

    def _check_gates(self, site: Site, user: SiteUser | None) -> None:
        if user is None:
            return
        if site.require_confirmed_email and not user.email_confirmed:
            raise AuthenticationFailure()
        if site.require_approval_before_login and not user.account_approved:
            raise AuthenticationFailure()
        if user.is_locked_out or user.is_deleted:
            raise AuthenticationFailure()

    def authenticate(
        self,
        site: Site,
        *,
        identifier: str,
        password: str,
        persistent: bool,
        return_url: str | None = None,
        captcha_response: str | None = None,
        client_ip: str | None = None,
        remember_browser_token: str | None = None,
    ) -> LoginOutcome:
        if site.db_auth_disabled():
            raise AuthenticationFailure()
        if site.captcha_required_on_login():
            ensure_captcha(self._captcha, site, captcha_response, client_ip, view="Login")

        self._check_gates(site, self._users.find_by_name(site, identifier))

        persistent = persistent and site.allow_persistent_login
        attempt = self._sign_in.password_sign_in(
            site,
            identifier,
            password,
            persistent=persistent,
            remember_browser_token=remember_browser_token,
        )
        result = attempt.result
        if result is SignInResult.SUCCESS:
            if attempt.user is not None:
                self._ip_tracker.track(site, attempt.user, client_ip)
            logger.info("login succeeded site=%s user=%s", site.alias_id, attempt.user.id if attempt.user else "-")
            return LoginOutcome(redirect_url=local_redirect_target(site, return_url), session=attempt.session)
        elif result is SignInResult.REQUIRES_TWO_FACTOR:
            return LoginOutcome(
                redirect_url=account_url(site, "SendCode", returnUrl=return_url, rememberMe=persistent),
                two_factor_token=attempt.two_factor_token,
            )
        elif result is SignInResult.LOCKED_OUT:
            raise LockedOutFailure()
        elif result is SignInResult.NOT_ALLOWED or result is SignInResult.FAILED:
            logger.info("login rejected site=%s result=%s", site.alias_id, result)
            raise AuthenticationFailure()
        else:
            assert_never(result)
