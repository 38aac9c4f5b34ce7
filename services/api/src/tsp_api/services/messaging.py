"""站点消息投递：邮件与短信。"""

from __future__ import annotations

from email.message import EmailMessage
import logging

import aiosmtplib
from jinja2 import TemplateError
from starlette.concurrency import run_in_threadpool
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from tsp_api.core.config import Settings
from tsp_api.models.site import Site
from tsp_api.models.user import SiteUser
from tsp_api.services.templates import SiteTemplateRenderer

logger = logging.getLogger("tsp_api.messaging")


class MessagingError(Exception):
    """消息通道未配置或投递失败。"""


class SiteEmailSender:
    """渲染站点模板并通过 SMTP 发送账号相关邮件。"""

    def __init__(self, settings: Settings, renderer: SiteTemplateRenderer) -> None:
        self._settings = settings
        self._renderer = renderer

    def is_enabled(self) -> bool:
        return bool(self._settings.smtp_host)

    def _render(self, site: Site, template_name: str, context: dict) -> str:
        try:
            return self._renderer.render(site, template_name, context)
        except TemplateError as exc:
            raise MessagingError(f"email template {template_name} unavailable: {exc}") from exc

    async def _send(self, site: Site, to_address: str, subject: str, html_body: str) -> None:
        if not self.is_enabled():
            raise MessagingError("smtp is not configured")
        message = EmailMessage()
        message["From"] = site.default_email_from_address or self._settings.email_default_sender
        message["To"] = to_address
        message["Subject"] = subject
        message.set_content(html_body, subtype="html")
        try:
            await aiosmtplib.send(
                message,
                hostname=self._settings.smtp_host,
                port=self._settings.smtp_port,
                username=self._settings.smtp_username,
                password=self._settings.smtp_password,
                use_tls=self._settings.smtp_use_tls,
                start_tls=self._settings.smtp_start_tls and not self._settings.smtp_use_tls,
                timeout=self._settings.smtp_timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise MessagingError(f"smtp delivery failed: {exc}") from exc
        logger.info("email sent site=%s subject=%r", site.alias_id, subject)

    async def send_account_confirmation_email(
        self, site: Site, to_address: str, subject: str, confirmation_url: str
    ) -> None:
        body = self._render(site, "AccountConfirmation", {"confirmation_url": confirmation_url})
        await self._send(site, to_address, subject, body)

    async def send_password_reset_email(self, site: Site, to_address: str, subject: str, reset_url: str) -> None:
        body = self._render(site, "PasswordReset", {"reset_url": reset_url})
        await self._send(site, to_address, subject, body)

    async def send_security_code_email(self, site: Site, to_address: str, subject: str, code: str) -> None:
        body = self._render(site, "SecurityCode", {"code": code})
        await self._send(site, to_address, subject, body)

    async def account_pending_approval_admin_notification(self, site: Site, user: SiteUser) -> None:
        """通知站点审批人有新账号待审批，未配置审批人时只记录告警。"""
        recipients = site.approval_recipients
        if not recipients:
            logger.warning("no approval recipients configured site=%s user=%s", site.alias_id, user.id)
            return
        body = self._render(
            site,
            "AccountPendingApproval",
            {"username": user.username, "email": user.email, "display_name": user.display_name},
        )
        for address in recipients:
            await self._send(site, address, "新账号待审批", body)


class SmsSender:
    """通过 Twilio 发送短信。"""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._client: Client | None = None

    def is_enabled(self) -> bool:
        return bool(
            self._settings.twilio_account_sid and self._settings.twilio_auth_token and self._settings.twilio_from_number
        )

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = Client(self._settings.twilio_account_sid, self._settings.twilio_auth_token)
        return self._client

    async def send_sms(self, site: Site, phone_number: str, message: str) -> None:
        if not self.is_enabled():
            raise MessagingError("sms is not configured")
        client = self._get_client()
        # 传输层失败以 requests 异常抛出，其基类为 OSError。
        try:
            # Twilio 客户端为同步实现，放到线程池避免阻塞事件循环。
            await run_in_threadpool(
                client.messages.create,
                to=phone_number,
                from_=self._settings.twilio_from_number,
                body=message,
            )
        except (TwilioException, OSError) as exc:
            raise MessagingError(f"sms delivery failed: {exc}") from exc
        logger.info("sms sent site=%s", site.alias_id)
