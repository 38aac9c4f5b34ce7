"""站点（租户）模型。"""

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tsp_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from tsp_api.models.enums import SiteStatus


def _split_csv(value: str | None) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class Site(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """站点实体：租户级登录/注册策略、主题与展示文案。"""

    __tablename__ = "sites"

    # 站点别名，作为租户目录键（sitefiles/{alias_id}）。
    alias_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    site_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # 按主机名解析站点时使用。
    hostname: Mapped[str | None] = mapped_column(String(255), unique=True)
    # 目录型多租户的一级路径，空表示站点根为 "/"。
    site_folder_name: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    theme: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SiteStatus.ACTIVE)

    use_email_for_login: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    captcha_on_login: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    captcha_on_registration: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recaptcha_public_key: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    recaptcha_private_key: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    allow_persistent_login: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    require_confirmed_email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    require_approval_before_login: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_new_registration: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    disable_db_auth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # 已启用的社交登录 provider，逗号分隔。
    social_auth_providers: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    registration_preamble: Mapped[str] = mapped_column(Text, nullable=False, default="")
    registration_agreement: Mapped[str] = mapped_column(Text, nullable=False, default="")
    login_info_top: Mapped[str] = mapped_column(Text, nullable=False, default="")
    login_info_bottom: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # 待审批通知收件人，逗号分隔。
    account_approval_email_csv: Mapped[str] = mapped_column(Text, nullable=False, default="")
    default_email_from_address: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    @property
    def enabled_social_providers(self) -> list[str]:
        return _split_csv(self.social_auth_providers)

    @property
    def approval_recipients(self) -> list[str]:
        return _split_csv(self.account_approval_email_csv)

    def has_any_social_auth_enabled(self) -> bool:
        return bool(self.enabled_social_providers)

    def captcha_required_on_login(self) -> bool:
        return self.captcha_on_login and bool(self.recaptcha_public_key)

    def captcha_required_on_registration(self) -> bool:
        return self.captcha_on_registration and bool(self.recaptcha_public_key)

    def agreement_required(self) -> bool:
        return bool(self.registration_agreement)

    def db_auth_disabled(self) -> bool:
        """仅在至少启用一个社交登录时才真正关闭本地账号登录。"""
        return self.disable_db_auth and self.has_any_social_auth_enabled()
