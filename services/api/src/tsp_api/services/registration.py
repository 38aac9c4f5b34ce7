"""注册协调：本地注册、外部身份注册、邮箱确认与重发确认邮件。

注册成功后按站点策略走且只走一条终止路径：
需确认邮箱 -> 后台发送确认邮件；否则需审批 -> 后台通知审批人；否则直接登录。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
from uuid import UUID

from starlette.concurrency import run_in_threadpool

from tsp_api.exceptions import ExternalServiceFailure, FieldError, ValidationFailure
from tsp_api.models.enums import RegistrationOutcome
from tsp_api.models.site import Site
from tsp_api.models.user import SiteUser
from tsp_api.services.background import DetachedDispatcher
from tsp_api.services.captcha import RecaptchaVerifier, captcha_error
from tsp_api.services.external_login import ExternalLoginService
from tsp_api.services.identity import UserManager, derive_username
from tsp_api.services.ip_tracking import IpAddressTracker
from tsp_api.services.local_auth import IssuedToken
from tsp_api.services.messaging import MessagingError, SiteEmailSender
from tsp_api.services.sign_in import SignInManager
from tsp_api.services.site_context import account_url, local_redirect_target, site_root_url

logger = logging.getLogger("tsp_api.registration")

CONFIRM_ACCOUNT_SUBJECT = "确认你的账号"
AGREEMENT_ERROR_MESSAGE = "必须同意注册条款。"
USERNAME_ERROR_MESSAGE = "用户名不可用，请换一个。"
INVALID_CONFIRMATION_MESSAGE = "确认链接无效或已过期。"
ALREADY_BOUND_MESSAGE = "该外部账号已绑定到其他用户，请直接登录。"


@dataclass
class RegistrationProfile:
    email: str
    password: str | None = None
    username: str = ""
    display_name: str = ""
    first_name: str = ""
    last_name: str = ""
    date_of_birth: date | None = None
    agree_to_terms: bool = False


@dataclass
class RegistrationResult:
    outcome: RegistrationOutcome
    user: SiteUser
    redirect_url: str
    session: IssuedToken | None = None


@dataclass
class EmailConfirmationResult:
    """邮箱确认结果：view 为 ConfirmEmail 或 PendingApproval。"""

    view: str
    user_id: UUID
    did_send: bool = False


class RegistrationCoordinator:
    def __init__(
        self,
        users: UserManager,
        sign_in: SignInManager,
        captcha: RecaptchaVerifier,
        email_sender: SiteEmailSender,
        ip_tracker: IpAddressTracker,
        external: ExternalLoginService,
    ) -> None:
        self._users = users
        self._sign_in = sign_in
        self._captcha = captcha
        self._email_sender = email_sender
        self._ip_tracker = ip_tracker
        self._external = external

    def register(
        self,
        site: Site,
        profile: RegistrationProfile,
        dispatcher: DetachedDispatcher,
        *,
        base_url: str,
        captcha_response: str | None = None,
        client_ip: str | None = None,
    ) -> RegistrationResult:
        """本地注册，所有表单错误一次性汇总返回。"""
        errors: list[FieldError] = []
        if site.captcha_required_on_registration():
            message = captcha_error(self._captcha, site, captcha_response, client_ip)
            if message:
                errors.append(FieldError(field="recaptcha", message=message))
        if site.agreement_required() and not profile.agree_to_terms:
            errors.append(FieldError(field="agree_to_terms", message=AGREEMENT_ERROR_MESSAGE))
        username = derive_username(profile.email, profile.username)
        if not self._users.login_is_available(site, None, username):
            errors.append(FieldError(field="username", message=USERNAME_ERROR_MESSAGE))
        if errors:
            raise ValidationFailure(errors, view="Register")

        user = self._users.create(
            site,
            username=username,
            email=profile.email,
            password=profile.password,
            display_name=profile.display_name,
            first_name=profile.first_name,
            last_name=profile.last_name,
            date_of_birth=profile.date_of_birth,
        )
        self._ip_tracker.track(site, user, client_ip)
        return self._finish(site, user, dispatcher, base_url=base_url, return_url=None)

    def register_external(
        self,
        site: Site,
        external_login_token: str | None,
        *,
        email: str,
        agree_to_terms: bool,
        dispatcher: DetachedDispatcher,
        base_url: str,
        return_url: str | None = None,
        client_ip: str | None = None,
    ) -> RegistrationResult:
        """以外部身份创建账号并绑定，派生用户名被占用时改用邮箱作为用户名。"""
        info = self._external.read_pending(site, external_login_token)
        if info is None:
            raise ExternalServiceFailure()
        if site.agreement_required() and not agree_to_terms:
            raise ValidationFailure.single(
                "agree_to_terms", AGREEMENT_ERROR_MESSAGE, view="ExternalLoginConfirmation"
            )

        if self._users.find_by_login(site, info.provider, info.provider_key) is not None:
            raise ValidationFailure.single(
                "external_login_token", ALREADY_BOUND_MESSAGE, view="ExternalLoginConfirmation"
            )

        username = derive_username(email)
        if not self._users.login_is_available(site, None, username):
            username = email.strip()
        user = self._users.create_with_login(
            site,
            username=username,
            email=email,
            display_name=info.name or "",
            provider=info.provider,
            provider_key=info.provider_key,
            provider_display_name=info.display_name,
        )
        self._ip_tracker.track(site, user, client_ip)
        logger.info("external login bound site=%s user=%s provider=%s", site.alias_id, user.id, info.provider)
        return self._finish(site, user, dispatcher, base_url=base_url, return_url=return_url)

    def _finish(
        self,
        site: Site,
        user: SiteUser,
        dispatcher: DetachedDispatcher,
        *,
        base_url: str,
        return_url: str | None,
    ) -> RegistrationResult:
        if site.require_confirmed_email:
            self._detach_confirmation(site, user, dispatcher, base_url=base_url)
            return RegistrationResult(
                outcome=RegistrationOutcome.EMAIL_CONFIRMATION_REQUIRED,
                user=user,
                redirect_url=account_url(site, "EmailConfirmationRequired", userId=user.id, didSend=True),
            )
        if site.require_approval_before_login:
            dispatcher.detach(
                "account pending approval notification",
                self._email_sender.account_pending_approval_admin_notification,
                site,
                user,
            )
            return RegistrationResult(
                outcome=RegistrationOutcome.PENDING_APPROVAL,
                user=user,
                redirect_url=account_url(site, "PendingApproval", userId=user.id, didSend=True),
            )
        return RegistrationResult(
            outcome=RegistrationOutcome.SIGNED_IN,
            user=user,
            redirect_url=local_redirect_target(site, return_url),
            session=self._sign_in.sign_in(user, persistent=False),
        )

    def _detach_confirmation(
        self, site: Site, user: SiteUser, dispatcher: DetachedDispatcher, *, base_url: str
    ) -> None:
        code = self._users.generate_email_confirmation_token(user)
        callback_url = base_url.rstrip("/") + account_url(site, "ConfirmEmail", userId=user.id, code=code)
        dispatcher.detach(
            "account confirmation email",
            self._email_sender.send_account_confirmation_email,
            site,
            user.email,
            CONFIRM_ACCOUNT_SUBJECT,
            callback_url,
        )

    def resend_confirmation(
        self,
        site: Site,
        user_id: UUID | None,
        dispatcher: DetachedDispatcher,
        *,
        base_url: str,
        client_ip: str | None = None,
    ) -> str:
        """为未确认邮箱的账号重发确认邮件，返回跳转地址。"""
        user = self._users.find_by_id(site, user_id)
        if user is None or user.email_confirmed:
            return site_root_url(site)
        self._detach_confirmation(site, user, dispatcher, base_url=base_url)
        self._ip_tracker.track(site, user, client_ip)
        return account_url(site, "EmailConfirmationRequired", userId=user.id, didSend=True)

    async def confirm_email(self, site: Site, user_id: str | None, code: str | None) -> EmailConfirmationResult:
        """确认邮箱；站点仍需审批时同步通知审批人并转入待审批页。"""
        if not user_id or not code:
            raise ValidationFailure.single("code", INVALID_CONFIRMATION_MESSAGE, view="Error")
        user = await run_in_threadpool(self._users.find_by_id, site, user_id)
        if user is None:
            raise ValidationFailure.single("code", INVALID_CONFIRMATION_MESSAGE, view="Error")
        confirmed = await run_in_threadpool(self._users.confirm_email, user, code)
        if not confirmed:
            raise ValidationFailure.single("code", INVALID_CONFIRMATION_MESSAGE, view="Error")

        if site.require_approval_before_login and not user.account_approved:
            did_send = True
            try:
                await self._email_sender.account_pending_approval_admin_notification(site, user)
            except MessagingError:
                logger.exception("approval notification failed site=%s user=%s", site.alias_id, user.id)
                did_send = False
            return EmailConfirmationResult(view="PendingApproval", user_id=user.id, did_send=did_send)
        return EmailConfirmationResult(view="ConfirmEmail", user_id=user.id)
