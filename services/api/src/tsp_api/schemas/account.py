"""账号页面的请求与视图模型。"""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from tsp_api.schemas.common import BaseSchema

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class LoginRequest(BaseModel):
    """口令登录请求，站点以邮箱登录时读取 email，否则读取 username。"""

    email: str = Field(default="", max_length=256, description="登录邮箱。", examples=["alice@example.com"])
    username: str = Field(default="", max_length=256, description="登录用户名。")
    password: str = Field(min_length=1, max_length=128, description="登录密码。")
    remember_me: bool = Field(default=False, description="是否保持登录（站点允许时生效）。")
    recaptcha_response: str | None = Field(default=None, description="reCAPTCHA 客户端响应。")


class RegisterRequest(BaseModel):
    """本地账号注册请求。"""

    email: str = Field(min_length=5, max_length=256, pattern=EMAIL_PATTERN, description="注册邮箱。")
    username: str = Field(default="", max_length=128, description="用户名，留空时由邮箱派生。")
    password: str = Field(min_length=8, max_length=128, description="登录密码。")
    confirm_password: str = Field(min_length=8, max_length=128, description="确认密码。")
    display_name: str = Field(default="", max_length=128, description="展示名。")
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    date_of_birth: date | None = None
    agree_to_terms: bool = Field(default=False, description="是否同意注册条款。")
    recaptcha_response: str | None = Field(default=None, description="reCAPTCHA 客户端响应。")

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("两次输入的密码不一致。")
        return self


class VerifyEmailRequest(BaseModel):
    user_id: UUID = Field(description="待确认邮箱的账号 ID。")


class ExternalLoginRequest(BaseModel):
    provider: str = Field(min_length=1, max_length=64, description="外部登录方式名称。")


class ExternalLoginConfirmationRequest(BaseModel):
    """外部身份首次登录时的注册确认。"""

    external_login_token: str = Field(min_length=1, description="回调阶段签发的待确认外部身份令牌。")
    email: str = Field(min_length=5, max_length=256, pattern=EMAIL_PATTERN, description="注册邮箱。")
    agree_to_terms: bool = Field(default=False, description="是否同意注册条款。")


class UsernameAvailableRequest(BaseModel):
    user_id: UUID | None = Field(default=None, description="正在编辑的账号 ID，新建时留空。")
    user_name: str = Field(default="", max_length=256, description="待检查的用户名。")


class ForgotPasswordRequest(BaseModel):
    email: str = Field(min_length=1, max_length=256, description="账号邮箱或用户名。")


class ResetPasswordRequest(BaseModel):
    email: str = Field(min_length=1, max_length=256, description="账号邮箱或用户名。")
    code: str = Field(min_length=1, description="重置链接中的令牌。")
    password: str = Field(min_length=8, max_length=128, description="新密码。")
    confirm_password: str = Field(min_length=8, max_length=128, description="确认新密码。")

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.password != self.confirm_password:
            raise ValueError("两次输入的密码不一致。")
        return self


class SendCodeRequest(BaseModel):
    selected_provider: str = Field(min_length=1, max_length=32, description="第二因素通道：Email 或 Phone。")
    remember_me: bool = False


class VerifyCodeRequest(BaseModel):
    provider: str = Field(min_length=1, max_length=32, description="第二因素通道。")
    code: str = Field(min_length=1, max_length=16, description="收到的安全码。")
    remember_me: bool = False
    remember_browser: bool = Field(default=False, description="是否记住此浏览器，后续登录免第二因素。")


class ExternalSchemeData(BaseSchema):
    name: str = Field(description="外部登录方式名称。")
    display_name: str = Field(description="展示名称。")


class LoginPageData(BaseSchema):
    """登录页模型。"""

    return_url: str | None = None
    recaptcha_site_key: str | None = Field(default=None, description="需要验证码时的站点公钥。")
    use_email_for_login: bool
    login_info_top: str
    login_info_bottom: str
    allow_persistent_login: bool
    external_schemes: list[ExternalSchemeData]
    disable_db_auth: bool = Field(description="仅在启用了社交登录时才会为 true。")


class RegisterPageData(BaseSchema):
    """注册页模型。"""

    site_id: UUID
    recaptcha_site_key: str | None = None
    use_email_for_login: bool
    registration_preamble: str
    registration_agreement: str
    agreement_required: bool
    external_schemes: list[ExternalSchemeData]


class PendingNotificationData(BaseSchema):
    user_id: UUID | None = None
    did_send: bool = False


class ExternalLoginConfirmationData(BaseSchema):
    """外部身份未绑定账号时的注册确认页模型。"""

    login_provider: str
    external_login_token: str
    email: str | None = None
    return_url: str | None = None
    registration_preamble: str
    registration_agreement: str
    agreement_required: bool


class SendCodePageData(BaseSchema):
    providers: list[str]
    return_url: str | None = None
    remember_me: bool = False


class VerifyCodePageData(BaseSchema):
    provider: str | None = None
    return_url: str | None = None
    remember_me: bool = False


class ResetPasswordPageData(BaseSchema):
    code: str
    user_id: UUID | None = None


class SessionData(BaseSchema):
    """登录成功后签发的会话。"""

    access_token: str = Field(description="会话令牌。")
    token_type: str = Field(default="bearer", description="令牌类型。")
    expires_at: datetime = Field(description="令牌过期时间（UTC）。")
    expires_in: int = Field(description="距过期剩余秒数。")
    remember_browser_token: str | None = Field(default=None, description="记住浏览器令牌。")


class TwoFactorPendingData(BaseSchema):
    two_factor_token: str = Field(description="待第二因素令牌，后续 SendCode/VerifyCode 通过请求头回传。")
