"""双因素协调：选择通道、下发验证码、校验验证码。

状态只由待验证令牌与账号锁定计数承载，本模块不保留重试计数，
用户不回来提交验证码时流程随令牌过期自然失效。
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import assert_never

from starlette.concurrency import run_in_threadpool

from tsp_api.exceptions import INVALID_CODE_MESSAGE, ExternalServiceFailure, LockedOutFailure, ValidationFailure
from tsp_api.models.enums import SignInResult, TwoFactorProvider
from tsp_api.models.site import Site
from tsp_api.models.user import SiteUser
from tsp_api.services.identity import UserManager
from tsp_api.services.local_auth import IssuedToken
from tsp_api.services.messaging import MessagingError, SiteEmailSender, SmsSender
from tsp_api.services.sign_in import SignInManager
from tsp_api.services.site_context import account_url, local_redirect_target

logger = logging.getLogger("tsp_api.two_factor")

SECURITY_CODE_SUBJECT = "安全码"
SMS_MESSAGE_TEMPLATE = "Your security code is: {code}"
EXPIRED_TWO_FACTOR_MESSAGE = "登录状态已失效，请重新登录。"


@dataclass
class TwoFactorOutcome:
    redirect_url: str
    session: IssuedToken | None = None
    remember_browser_token: str | None = None


class TwoFactorCoordinator:
    def __init__(
        self,
        users: UserManager,
        sign_in: SignInManager,
        email_sender: SiteEmailSender,
        sms_sender: SmsSender,
    ) -> None:
        self._users = users
        self._sign_in = sign_in
        self._email_sender = email_sender
        self._sms_sender = sms_sender

    def pending_user(self, site: Site, two_factor_token: str | None) -> SiteUser:
        """取回待第二因素的账号，令牌缺失或失效时呈现错误页。"""
        user = self._sign_in.get_two_factor_user(site, two_factor_token)
        if user is None:
            raise ValidationFailure.single("two_factor_token", EXPIRED_TWO_FACTOR_MESSAGE, view="Error")
        return user

    def providers(self, site: Site, two_factor_token: str | None) -> list[str]:
        user = self.pending_user(site, two_factor_token)
        return [str(item) for item in self._users.valid_two_factor_providers(user)]

    async def send_code(
        self,
        site: Site,
        two_factor_token: str | None,
        provider: str,
        *,
        return_url: str | None,
        remember_me: bool,
    ) -> str:
        """生成并下发验证码，返回验证码输入页地址。"""
        user = await run_in_threadpool(self.pending_user, site, two_factor_token)
        code = await run_in_threadpool(self._users.generate_two_factor_code, user, provider)
        if not code.strip():
            raise ExternalServiceFailure()

        try:
            if provider == TwoFactorProvider.EMAIL:
                await self._email_sender.send_security_code_email(site, user.email, SECURITY_CODE_SUBJECT, code)
            elif provider == TwoFactorProvider.PHONE:
                await self._sms_sender.send_sms(site, user.phone_number or "", SMS_MESSAGE_TEMPLATE.format(code=code))
        except MessagingError as exc:
            logger.warning("security code dispatch failed site=%s provider=%s: %s", site.alias_id, provider, exc)
            raise ExternalServiceFailure() from exc

        logger.info("security code dispatched site=%s user=%s provider=%s", site.alias_id, user.id, provider)
        return account_url(site, "VerifyCode", provider=provider, returnUrl=return_url, rememberMe=remember_me)

    def verify(
        self,
        site: Site,
        two_factor_token: str | None,
        provider: str,
        code: str,
        *,
        return_url: str | None,
        remember_me: bool,
        remember_browser: bool,
    ) -> TwoFactorOutcome:
        attempt = self._sign_in.two_factor_sign_in(
            site,
            two_factor_token,
            provider,
            code,
            persistent=remember_me and site.allow_persistent_login,
            remember_browser=remember_browser,
        )
        result = attempt.result
        if result is SignInResult.SUCCESS:
            return TwoFactorOutcome(
                redirect_url=local_redirect_target(site, return_url),
                session=attempt.session,
                remember_browser_token=attempt.remember_browser_token,
            )
        elif result is SignInResult.LOCKED_OUT:
            raise LockedOutFailure()
        elif (
            result is SignInResult.FAILED
            or result is SignInResult.NOT_ALLOWED
            or result is SignInResult.REQUIRES_TWO_FACTOR
        ):
            raise ValidationFailure.single("code", INVALID_CODE_MESSAGE, view="VerifyCode")
        else:
            assert_never(result)
