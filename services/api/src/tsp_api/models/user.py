"""站点账号与关联模型。"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import Boolean, Date, DateTime, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tsp_api.models.base import Base, SiteScopedMixin, TimestampMixin, UUIDPrimaryKeyMixin


class SiteUser(Base, UUIDPrimaryKeyMixin, SiteScopedMixin, TimestampMixin):
    """站点内账号，登录名在站点内唯一。"""

    __tablename__ = "site_users"
    __table_args__ = (UniqueConstraint("site_id", "username", name="uk_site_user_username"),)

    username: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    date_of_birth: Mapped[date | None] = mapped_column(Date)
    # 仅通过外部身份登录的账号没有本地口令。
    password_hash: Mapped[str | None] = mapped_column(String(256))
    # 口令或确认状态变化时轮换，使已签发的一次性令牌失效。
    security_stamp: Mapped[str] = mapped_column(String(64), nullable=False)
    email_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    phone_number: Mapped[str | None] = mapped_column(String(50))
    phone_number_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    account_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # 管理员手工锁定标记，区别于失败次数触发的临时锁定窗口。
    is_locked_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    access_failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lockout_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class UserLogin(Base, UUIDPrimaryKeyMixin, SiteScopedMixin, TimestampMixin):
    """外部登录绑定：本地账号与第三方身份键的关联。"""

    __tablename__ = "user_logins"
    __table_args__ = (
        UniqueConstraint("site_id", "login_provider", "provider_key", name="uk_user_login_provider_key"),
    )

    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    login_provider: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_key: Mapped[str] = mapped_column(String(256), nullable=False)
    provider_display_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")


class UserLocation(Base, UUIDPrimaryKeyMixin, SiteScopedMixin):
    """账号访问来源 IP 记录。"""

    __tablename__ = "user_locations"
    __table_args__ = (UniqueConstraint("user_id", "ip_address", name="uk_user_location_ip"),)

    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    first_captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    capture_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
