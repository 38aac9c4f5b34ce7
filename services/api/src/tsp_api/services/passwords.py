"""忘记密码与重置密码。

两个入口都不暴露账号是否存在或邮箱是否已确认。
"""

from __future__ import annotations

import logging

from tsp_api.exceptions import ValidationFailure
from tsp_api.models.site import Site
from tsp_api.services.background import DetachedDispatcher
from tsp_api.services.identity import UserManager
from tsp_api.services.messaging import SiteEmailSender
from tsp_api.services.site_context import account_url

logger = logging.getLogger("tsp_api.passwords")

RESET_PASSWORD_SUBJECT = "重置密码"
INVALID_RESET_MESSAGE = "重置链接无效或已过期。"


class PasswordResetCoordinator:
    def __init__(self, users: UserManager, email_sender: SiteEmailSender) -> None:
        self._users = users
        self._email_sender = email_sender

    def request_reset(self, site: Site, email: str, dispatcher: DetachedDispatcher, *, base_url: str) -> None:
        user = self._users.find_by_name(site, email)
        if user is None or not user.email_confirmed:
            return
        code = self._users.generate_password_reset_token(user)
        reset_url = base_url.rstrip("/") + account_url(site, "ResetPassword", userId=user.id, code=code)
        dispatcher.detach(
            "password reset email",
            self._email_sender.send_password_reset_email,
            site,
            email.strip(),
            RESET_PASSWORD_SUBJECT,
            reset_url,
        )

    def reset(self, site: Site, email: str, code: str, new_password: str) -> None:
        """重置成功或账号不存在都视为完成；令牌无效时报表单错误。"""
        user = self._users.find_by_name(site, email)
        if user is None:
            return
        if not self._users.reset_password(user, code, new_password):
            raise ValidationFailure.single("code", INVALID_RESET_MESSAGE, view="ResetPassword")
        self._users.reset_access_failed_count(user)
        logger.info("password reset site=%s user=%s", site.alias_id, user.id)
