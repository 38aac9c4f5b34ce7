"""请求上下文依赖。

职责:
1. 按请求解析当前站点（站点别名头 -> 主机名 -> 默认站点）。
2. 组装账号流程协作方，显式注入到各协调器。
3. 解析可选的登录会话与待第二因素令牌。

外发协作方（邮件、短信、验证码校验）各自独立成依赖，测试中可整体替换。
"""

from fastapi import BackgroundTasks, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from tsp_api.core.config import Settings, get_settings
from tsp_api.core.security import AuthenticatedSession, read_session
from tsp_api.db.session import get_db
from tsp_api.models.site import Site
from tsp_api.services.background import DetachedDispatcher
from tsp_api.services.captcha import RecaptchaVerifier
from tsp_api.services.external_login import ExternalLoginService
from tsp_api.services.identity import UserManager
from tsp_api.services.ip_tracking import IpAddressTracker
from tsp_api.services.login import SessionCoordinator
from tsp_api.services.messaging import SiteEmailSender, SmsSender
from tsp_api.services.passwords import PasswordResetCoordinator
from tsp_api.services.registration import RegistrationCoordinator
from tsp_api.services.sign_in import SignInManager
from tsp_api.services.site_context import resolve_site
from tsp_api.services.templates import SiteTemplateRenderer, get_template_renderer
from tsp_api.services.two_factor import TwoFactorCoordinator


def get_current_site(
    request: Request,
    x_site_alias: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Site:
    """解析当前站点，站点不存在或未启用时返回 404。"""
    site = resolve_site(db, host=request.headers.get("host"), alias=x_site_alias)
    if site is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="site not found")
    return site


def get_optional_session(
    site: Site = Depends(get_current_site),
    authorization: str | None = Header(default=None),
) -> AuthenticatedSession | None:
    """已登录时返回会话，否则返回 None；页面接口据此决定是否直接回站点根。"""
    return read_session(authorization, site_id=site.id)


def get_two_factor_token(x_two_factor_token: str | None = Header(default=None)) -> str | None:
    return x_two_factor_token


def get_remember_browser_token(x_remember_browser_token: str | None = Header(default=None)) -> str | None:
    return x_remember_browser_token


def get_user_manager(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> UserManager:
    return UserManager(db, settings)


def get_sign_in_manager(
    users: UserManager = Depends(get_user_manager),
    settings: Settings = Depends(get_settings),
) -> SignInManager:
    return SignInManager(users, settings)


def get_renderer() -> SiteTemplateRenderer:
    return get_template_renderer()


def get_email_sender(
    settings: Settings = Depends(get_settings),
    renderer: SiteTemplateRenderer = Depends(get_renderer),
) -> SiteEmailSender:
    return SiteEmailSender(settings, renderer)


def get_sms_sender(settings: Settings = Depends(get_settings)) -> SmsSender:
    return SmsSender(settings)


def get_captcha_verifier(settings: Settings = Depends(get_settings)) -> RecaptchaVerifier:
    return RecaptchaVerifier(settings)


def get_ip_tracker(db: Session = Depends(get_db)) -> IpAddressTracker:
    return IpAddressTracker(db)


def get_external_login_service(settings: Settings = Depends(get_settings)) -> ExternalLoginService:
    return ExternalLoginService(settings)


def get_dispatcher(background_tasks: BackgroundTasks) -> DetachedDispatcher:
    return DetachedDispatcher(background_tasks)


def get_session_coordinator(
    users: UserManager = Depends(get_user_manager),
    sign_in: SignInManager = Depends(get_sign_in_manager),
    captcha: RecaptchaVerifier = Depends(get_captcha_verifier),
    ip_tracker: IpAddressTracker = Depends(get_ip_tracker),
) -> SessionCoordinator:
    return SessionCoordinator(users, sign_in, captcha, ip_tracker)


def get_two_factor_coordinator(
    users: UserManager = Depends(get_user_manager),
    sign_in: SignInManager = Depends(get_sign_in_manager),
    email_sender: SiteEmailSender = Depends(get_email_sender),
    sms_sender: SmsSender = Depends(get_sms_sender),
) -> TwoFactorCoordinator:
    return TwoFactorCoordinator(users, sign_in, email_sender, sms_sender)


def get_registration_coordinator(
    users: UserManager = Depends(get_user_manager),
    sign_in: SignInManager = Depends(get_sign_in_manager),
    captcha: RecaptchaVerifier = Depends(get_captcha_verifier),
    email_sender: SiteEmailSender = Depends(get_email_sender),
    ip_tracker: IpAddressTracker = Depends(get_ip_tracker),
    external: ExternalLoginService = Depends(get_external_login_service),
) -> RegistrationCoordinator:
    return RegistrationCoordinator(users, sign_in, captcha, email_sender, ip_tracker, external)


def get_password_reset_coordinator(
    users: UserManager = Depends(get_user_manager),
    email_sender: SiteEmailSender = Depends(get_email_sender),
) -> PasswordResetCoordinator:
    return PasswordResetCoordinator(users, email_sender)
