"""领域枚举定义。"""

from enum import StrEnum


class SiteStatus(StrEnum):
    """站点状态。"""

    ACTIVE = "active"  # 正常对外服务。
    SUSPENDED = "suspended"  # 暂停，拒绝解析为当前站点。
    DELETED = "deleted"  # 逻辑删除，仅用于审计与保留。


class SignInResult(StrEnum):
    """凭据校验结果，调用方必须逐一处理全部取值。"""

    SUCCESS = "success"  # 已建立会话。
    REQUIRES_TWO_FACTOR = "requires_two_factor"  # 主凭据通过，等待第二因素。
    LOCKED_OUT = "locked_out"  # 处于锁定窗口内。
    NOT_ALLOWED = "not_allowed"  # 站点策略不允许登录（未确认邮箱/未审批/已禁用）。
    FAILED = "failed"  # 凭据错误或账号不存在。


class RegistrationOutcome(StrEnum):
    """注册完成后的三条互斥终止路径。"""

    EMAIL_CONFIRMATION_REQUIRED = "email_confirmation_required"  # 已发送确认邮件，不建立会话。
    PENDING_APPROVAL = "pending_approval"  # 已通知管理员审批，不建立会话。
    SIGNED_IN = "signed_in"  # 立即建立会话。


class TwoFactorProvider(StrEnum):
    """第二因素通道。"""

    EMAIL = "Email"  # 通过邮件发送安全码。
    PHONE = "Phone"  # 通过短信发送安全码。


class TokenPurpose(StrEnum):
    """本服务签发令牌的用途。"""

    SESSION = "session"  # 登录会话。
    TWO_FACTOR = "two_factor"  # 主凭据已通过、待第二因素的半认证状态。
    TWO_FACTOR_REMEMBER = "two_factor_remember"  # 记住浏览器，后续登录免第二因素。
    EXTERNAL_LOGIN = "external_login"  # 外部身份已校验、待确认注册。
    CONFIRM_EMAIL = "confirm_email"  # 邮箱确认链接。
    RESET_PASSWORD = "reset_password"  # 重置密码链接。
