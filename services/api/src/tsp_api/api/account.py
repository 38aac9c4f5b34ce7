"""账号页面接口：登录、注册、外部登录、邮箱确认、密码重置与双因素。

页面接口返回视图模型或跳转指令（见 utils.response），
`/Account/UsernameAvailable` 例外，直接返回 JSON 布尔值。
"""

import logging
from typing import assert_never
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from tsp_api.core.security import AuthenticatedSession
from tsp_api.dependencies import (
    get_current_site,
    get_dispatcher,
    get_external_login_service,
    get_ip_tracker,
    get_optional_session,
    get_password_reset_coordinator,
    get_registration_coordinator,
    get_remember_browser_token,
    get_session_coordinator,
    get_sign_in_manager,
    get_two_factor_coordinator,
    get_two_factor_token,
    get_user_manager,
)
from tsp_api.exceptions import LockedOutFailure, NotAllowedFailure, ValidationFailure
from tsp_api.models.enums import SignInResult
from tsp_api.models.site import Site
from tsp_api.schemas.account import (
    ExternalLoginConfirmationData,
    ExternalLoginConfirmationRequest,
    ExternalLoginRequest,
    ExternalSchemeData,
    ForgotPasswordRequest,
    LoginPageData,
    LoginRequest,
    PendingNotificationData,
    RegisterPageData,
    RegisterRequest,
    ResetPasswordPageData,
    ResetPasswordRequest,
    SendCodePageData,
    SendCodeRequest,
    SessionData,
    TwoFactorPendingData,
    UsernameAvailableRequest,
    VerifyCodePageData,
    VerifyCodeRequest,
    VerifyEmailRequest,
)
from tsp_api.schemas.common import ErrorResponse, SuccessResponse
from tsp_api.schemas.responses import LogOffData
from tsp_api.services.background import DetachedDispatcher
from tsp_api.services.external_login import ExternalIdentityError, ExternalLoginService
from tsp_api.services.identity import UserManager
from tsp_api.services.ip_tracking import IpAddressTracker, client_ip
from tsp_api.services.local_auth import IssuedToken
from tsp_api.services.login import SessionCoordinator
from tsp_api.services.passwords import PasswordResetCoordinator
from tsp_api.services.registration import RegistrationCoordinator, RegistrationProfile
from tsp_api.services.sign_in import SignInManager
from tsp_api.services.site_context import account_url, local_redirect_target, site_root_url
from tsp_api.services.two_factor import TwoFactorCoordinator
from tsp_api.utils.response import redirect_result, view_result

logger = logging.getLogger("tsp_api.account")

router = APIRouter(prefix="/Account", tags=["account"])

_PAGE_ERRORS = {
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    423: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def _session_data(session: IssuedToken, remember_browser_token: str | None = None) -> dict:
    return SessionData(
        access_token=session.token,
        expires_at=session.expires_at,
        expires_in=session.expires_in,
        remember_browser_token=remember_browser_token,
    ).model_dump(mode="json")


def _base_url(request: Request) -> str:
    return str(request.base_url)


def _schemes(sign_in: SignInManager, site: Site) -> list[ExternalSchemeData]:
    return [ExternalSchemeData(name=item.name, display_name=item.display_name) for item in sign_in.external_schemes(site)]


def _ensure_registration_open(site: Site) -> None:
    if not site.allow_new_registration:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")


def _login_page(site: Site, sign_in: SignInManager, return_url: str | None) -> LoginPageData:
    return LoginPageData(
        return_url=return_url,
        recaptcha_site_key=site.recaptcha_public_key if site.captcha_required_on_login() else None,
        use_email_for_login=site.use_email_for_login,
        login_info_top=site.login_info_top,
        login_info_bottom=site.login_info_bottom,
        allow_persistent_login=site.allow_persistent_login,
        external_schemes=_schemes(sign_in, site),
        disable_db_auth=site.db_auth_disabled(),
    )


@router.get(
    "/Login",
    summary="登录页",
    description="已登录时跳回站点根，否则返回登录页模型。",
    response_model=SuccessResponse[LoginPageData | dict],
    responses=_PAGE_ERRORS,
)
def login_page(
    request: Request,
    return_url: str | None = Query(default=None, alias="returnUrl"),
    site: Site = Depends(get_current_site),
    current: AuthenticatedSession | None = Depends(get_optional_session),
    sign_in: SignInManager = Depends(get_sign_in_manager),
):
    if current is not None:
        return redirect_result(request, site_root_url(site))
    return view_result(request, "Login", _login_page(site, sign_in, return_url).model_dump(mode="json"))


@router.post(
    "/Login",
    summary="口令登录",
    description="成功时返回会话令牌；需第二因素时返回待验证令牌并跳转 SendCode。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def login(
    payload: LoginRequest,
    request: Request,
    return_url: str | None = Query(default=None, alias="returnUrl"),
    site: Site = Depends(get_current_site),
    remember_browser_token: str | None = Depends(get_remember_browser_token),
    coordinator: SessionCoordinator = Depends(get_session_coordinator),
):
    identifier = payload.email if site.use_email_for_login else payload.username
    outcome = coordinator.authenticate(
        site,
        identifier=identifier,
        password=payload.password,
        persistent=payload.remember_me,
        return_url=return_url,
        captcha_response=payload.recaptcha_response,
        client_ip=client_ip(request),
        remember_browser_token=remember_browser_token,
    )
    if outcome.session is not None:
        return redirect_result(request, outcome.redirect_url, _session_data(outcome.session))
    pending = TwoFactorPendingData(two_factor_token=outcome.two_factor_token or "")
    return redirect_result(request, outcome.redirect_url, pending.model_dump(mode="json"))


@router.get(
    "/Register",
    summary="注册页",
    description="站点关闭注册时返回 404；仅允许社交登录时跳转登录页。",
    response_model=SuccessResponse[RegisterPageData | dict],
    responses=_PAGE_ERRORS,
)
def register_page(
    request: Request,
    site: Site = Depends(get_current_site),
    current: AuthenticatedSession | None = Depends(get_optional_session),
    sign_in: SignInManager = Depends(get_sign_in_manager),
):
    if current is not None:
        return redirect_result(request, site_root_url(site))
    _ensure_registration_open(site)
    if site.db_auth_disabled():
        return redirect_result(request, account_url(site, "Login"))
    model = RegisterPageData(
        site_id=site.id,
        recaptcha_site_key=site.recaptcha_public_key if site.captcha_required_on_registration() else None,
        use_email_for_login=site.use_email_for_login,
        registration_preamble=site.registration_preamble,
        registration_agreement=site.registration_agreement,
        agreement_required=site.agreement_required(),
        external_schemes=_schemes(sign_in, site),
    )
    return view_result(request, "Register", model.model_dump(mode="json"))


@router.post(
    "/Register",
    summary="注册本地账号",
    description="按站点策略进入确认邮箱、待审批或直接登录三条路径之一。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def register(
    payload: RegisterRequest,
    request: Request,
    site: Site = Depends(get_current_site),
    dispatcher: DetachedDispatcher = Depends(get_dispatcher),
    coordinator: RegistrationCoordinator = Depends(get_registration_coordinator),
):
    _ensure_registration_open(site)
    profile = RegistrationProfile(
        email=payload.email,
        password=payload.password,
        username=payload.username,
        display_name=payload.display_name,
        first_name=payload.first_name,
        last_name=payload.last_name,
        date_of_birth=payload.date_of_birth,
        agree_to_terms=payload.agree_to_terms,
    )
    result = coordinator.register(
        site,
        profile,
        dispatcher,
        base_url=_base_url(request),
        captcha_response=payload.recaptcha_response,
        client_ip=client_ip(request),
    )
    data = {"outcome": str(result.outcome), "user_id": str(result.user.id)}
    if result.session is not None:
        data.update(_session_data(result.session))
    return redirect_result(request, result.redirect_url, data)


def _pending_notification(
    request: Request,
    view: str,
    site: Site,
    current: AuthenticatedSession | None,
    user_id: UUID | None,
    did_send: bool,
):
    if current is not None:
        return redirect_result(request, site_root_url(site))
    model = PendingNotificationData(user_id=user_id, did_send=did_send)
    return view_result(request, view, model.model_dump(mode="json"))


@router.get(
    "/PendingApproval",
    summary="待审批提示页",
    response_model=SuccessResponse[PendingNotificationData | dict],
    responses=_PAGE_ERRORS,
)
def pending_approval(
    request: Request,
    user_id: UUID | None = Query(default=None, alias="userId"),
    did_send: bool = Query(default=False, alias="didSend"),
    site: Site = Depends(get_current_site),
    current: AuthenticatedSession | None = Depends(get_optional_session),
):
    return _pending_notification(request, "PendingApproval", site, current, user_id, did_send)


@router.get(
    "/EmailConfirmationRequired",
    summary="待确认邮箱提示页",
    response_model=SuccessResponse[PendingNotificationData | dict],
    responses=_PAGE_ERRORS,
)
def email_confirmation_required(
    request: Request,
    user_id: UUID | None = Query(default=None, alias="userId"),
    did_send: bool = Query(default=False, alias="didSend"),
    site: Site = Depends(get_current_site),
    current: AuthenticatedSession | None = Depends(get_optional_session),
):
    return _pending_notification(request, "EmailConfirmationRequired", site, current, user_id, did_send)


@router.post(
    "/VerifyEmail",
    summary="重发确认邮件",
    description="账号不存在或邮箱已确认时直接回站点根。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def verify_email(
    payload: VerifyEmailRequest,
    request: Request,
    site: Site = Depends(get_current_site),
    dispatcher: DetachedDispatcher = Depends(get_dispatcher),
    coordinator: RegistrationCoordinator = Depends(get_registration_coordinator),
):
    target = coordinator.resend_confirmation(
        site,
        payload.user_id,
        dispatcher,
        base_url=_base_url(request),
        client_ip=client_ip(request),
    )
    return redirect_result(request, target)


@router.get(
    "/ConfirmEmail",
    summary="确认邮箱",
    description="确认成功后站点仍需审批时通知审批人并转入待审批页。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
async def confirm_email(
    request: Request,
    user_id: str | None = Query(default=None, alias="userId"),
    code: str | None = Query(default=None),
    site: Site = Depends(get_current_site),
    current: AuthenticatedSession | None = Depends(get_optional_session),
    coordinator: RegistrationCoordinator = Depends(get_registration_coordinator),
):
    if current is not None:
        return redirect_result(request, site_root_url(site))
    result = await coordinator.confirm_email(site, user_id, code)
    if result.view == "PendingApproval":
        return redirect_result(
            request,
            account_url(site, "PendingApproval", userId=result.user_id, didSend=result.did_send),
        )
    return view_result(request, result.view, {"user_id": str(result.user_id)})


@router.post(
    "/LogOff",
    summary="退出登录",
    description="吊销当前会话令牌并跳回站点根。",
    response_model=SuccessResponse[LogOffData],
    responses=_PAGE_ERRORS,
)
def log_off(
    request: Request,
    site: Site = Depends(get_current_site),
    current: AuthenticatedSession | None = Depends(get_optional_session),
    sign_in: SignInManager = Depends(get_sign_in_manager),
):
    revoked = sign_in.sign_out(current) if current is not None else False
    if revoked:
        logger.info("logged off site=%s user=%s", site.alias_id, current.user_id)
    return redirect_result(request, site_root_url(site), LogOffData(revoked=revoked).model_dump(mode="json"))


@router.post(
    "/ExternalLogin",
    summary="发起外部登录",
    description="跳转到站点已启用的外部身份提供方。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def external_login(
    payload: ExternalLoginRequest,
    request: Request,
    return_url: str | None = Query(default=None, alias="returnUrl"),
    site: Site = Depends(get_current_site),
    external: ExternalLoginService = Depends(get_external_login_service),
):
    callback_url = _base_url(request).rstrip("/") + account_url(
        site, "ExternalLoginCallback", provider=payload.provider, returnUrl=return_url
    )
    try:
        target = external.challenge_url(site, payload.provider, callback_url=callback_url)
    except ExternalIdentityError as exc:
        raise ValidationFailure.single("provider", "不支持的登录方式。", view="Login") from exc
    return redirect_result(request, target)


@router.get(
    "/ExternalLoginCallback",
    summary="外部登录回调",
    description="已绑定账号时登录；未绑定时返回注册确认页模型与待确认外部身份令牌。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def external_login_callback(
    request: Request,
    provider: str = Query(default=""),
    assertion: str | None = Query(default=None),
    return_url: str | None = Query(default=None, alias="returnUrl"),
    remote_error: str | None = Query(default=None, alias="remoteError"),
    site: Site = Depends(get_current_site),
    external: ExternalLoginService = Depends(get_external_login_service),
    sign_in: SignInManager = Depends(get_sign_in_manager),
    ip_tracker: IpAddressTracker = Depends(get_ip_tracker),
):
    if remote_error is not None:
        raise ValidationFailure.single("", f"外部登录失败：{remote_error}", view="Login")
    try:
        info = external.read_assertion(site, provider, assertion)
    except ExternalIdentityError:
        return redirect_result(request, account_url(site, "Login", returnUrl=return_url))

    attempt = sign_in.external_login_sign_in(site, info.provider, info.provider_key)
    result = attempt.result
    if result is SignInResult.SUCCESS:
        if attempt.user is not None:
            ip_tracker.track(site, attempt.user, client_ip(request))
        return redirect_result(request, local_redirect_target(site, return_url), _session_data(attempt.session))
    elif result is SignInResult.REQUIRES_TWO_FACTOR:
        pending = TwoFactorPendingData(two_factor_token=attempt.two_factor_token or "")
        return redirect_result(
            request, account_url(site, "SendCode", returnUrl=return_url), pending.model_dump(mode="json")
        )
    elif result is SignInResult.NOT_ALLOWED:
        raise NotAllowedFailure(redirect_url=account_url(site, "PendingApproval"))
    elif result is SignInResult.LOCKED_OUT:
        raise LockedOutFailure()
    elif result is SignInResult.FAILED:
        model = ExternalLoginConfirmationData(
            login_provider=info.provider,
            external_login_token=external.issue_pending(site, info),
            email=info.email,
            return_url=return_url,
            registration_preamble=site.registration_preamble,
            registration_agreement=site.registration_agreement,
            agreement_required=site.agreement_required(),
        )
        return view_result(request, "ExternalLoginConfirmation", model.model_dump(mode="json"))
    else:
        assert_never(result)


@router.post(
    "/ExternalLoginConfirmation",
    summary="外部身份注册确认",
    description="以外部身份创建账号，终止路径与本地注册一致。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def external_login_confirmation(
    payload: ExternalLoginConfirmationRequest,
    request: Request,
    return_url: str | None = Query(default=None, alias="returnUrl"),
    site: Site = Depends(get_current_site),
    dispatcher: DetachedDispatcher = Depends(get_dispatcher),
    coordinator: RegistrationCoordinator = Depends(get_registration_coordinator),
):
    _ensure_registration_open(site)
    result = coordinator.register_external(
        site,
        payload.external_login_token,
        email=payload.email,
        agree_to_terms=payload.agree_to_terms,
        dispatcher=dispatcher,
        base_url=_base_url(request),
        return_url=return_url,
        client_ip=client_ip(request),
    )
    data = {"outcome": str(result.outcome), "user_id": str(result.user.id)}
    if result.session is not None:
        data.update(_session_data(result.session))
    return redirect_result(request, result.redirect_url, data)


@router.post(
    "/UsernameAvailable",
    summary="用户名是否可用",
    description="未被占用，或正被 user_id 指向的账号自己占用时返回 true。直接返回 JSON 布尔值。",
    response_model=bool,
)
def username_available(
    payload: UsernameAvailableRequest,
    site: Site = Depends(get_current_site),
    users: UserManager = Depends(get_user_manager),
) -> bool:
    return users.login_is_available(site, payload.user_id, payload.user_name)


@router.get("/ForgotPassword", summary="忘记密码页", response_model=SuccessResponse[dict])
def forgot_password_page(request: Request, site: Site = Depends(get_current_site)):
    return view_result(request, "ForgotPassword")


@router.post(
    "/ForgotPassword",
    summary="申请重置密码",
    description="无论账号是否存在都返回同一结果；账号存在且邮箱已确认时后台发送重置邮件。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    site: Site = Depends(get_current_site),
    dispatcher: DetachedDispatcher = Depends(get_dispatcher),
    coordinator: PasswordResetCoordinator = Depends(get_password_reset_coordinator),
):
    coordinator.request_reset(site, payload.email, dispatcher, base_url=_base_url(request))
    return view_result(request, "ForgotPasswordConfirmation")


@router.get("/ForgotPasswordConfirmation", summary="重置邮件已发送页", response_model=SuccessResponse[dict])
def forgot_password_confirmation(request: Request, site: Site = Depends(get_current_site)):
    return view_result(request, "ForgotPasswordConfirmation")


@router.get(
    "/ResetPassword",
    summary="重置密码页",
    description="缺少重置令牌时呈现错误页。",
    response_model=SuccessResponse[ResetPasswordPageData | dict],
    responses=_PAGE_ERRORS,
)
def reset_password_page(
    request: Request,
    code: str | None = Query(default=None),
    user_id: UUID | None = Query(default=None, alias="userId"),
    site: Site = Depends(get_current_site),
):
    if not code:
        raise ValidationFailure.single("code", "重置链接无效。", view="Error")
    return view_result(request, "ResetPassword", ResetPasswordPageData(code=code, user_id=user_id).model_dump(mode="json"))


@router.post(
    "/ResetPassword",
    summary="重置密码",
    description="账号不存在时同样跳转到完成页，不暴露账号是否存在。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    site: Site = Depends(get_current_site),
    coordinator: PasswordResetCoordinator = Depends(get_password_reset_coordinator),
):
    coordinator.reset(site, payload.email, payload.code, payload.password)
    return redirect_result(request, account_url(site, "ResetPasswordConfirmation"))


@router.get("/ResetPasswordConfirmation", summary="密码已重置页", response_model=SuccessResponse[dict])
def reset_password_confirmation(request: Request, site: Site = Depends(get_current_site)):
    return view_result(request, "ResetPasswordConfirmation")


@router.get(
    "/SendCode",
    summary="选择第二因素通道",
    description="需要在 X-Two-Factor-Token 头中携带登录阶段签发的待验证令牌。",
    response_model=SuccessResponse[SendCodePageData | dict],
    responses=_PAGE_ERRORS,
)
def send_code_page(
    request: Request,
    return_url: str | None = Query(default=None, alias="returnUrl"),
    remember_me: bool = Query(default=False, alias="rememberMe"),
    site: Site = Depends(get_current_site),
    two_factor_token: str | None = Depends(get_two_factor_token),
    coordinator: TwoFactorCoordinator = Depends(get_two_factor_coordinator),
):
    model = SendCodePageData(
        providers=coordinator.providers(site, two_factor_token),
        return_url=return_url,
        remember_me=remember_me,
    )
    return view_result(request, "SendCode", model.model_dump(mode="json"))


@router.post(
    "/SendCode",
    summary="下发安全码",
    description="通过所选通道发送安全码；生成或投递失败时呈现错误页。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
async def send_code(
    payload: SendCodeRequest,
    request: Request,
    return_url: str | None = Query(default=None, alias="returnUrl"),
    site: Site = Depends(get_current_site),
    two_factor_token: str | None = Depends(get_two_factor_token),
    coordinator: TwoFactorCoordinator = Depends(get_two_factor_coordinator),
):
    target = await coordinator.send_code(
        site,
        two_factor_token,
        payload.selected_provider,
        return_url=return_url,
        remember_me=payload.remember_me,
    )
    return redirect_result(request, target)


@router.get(
    "/VerifyCode",
    summary="安全码输入页",
    response_model=SuccessResponse[VerifyCodePageData | dict],
    responses=_PAGE_ERRORS,
)
def verify_code_page(
    request: Request,
    provider: str | None = Query(default=None),
    return_url: str | None = Query(default=None, alias="returnUrl"),
    remember_me: bool = Query(default=False, alias="rememberMe"),
    site: Site = Depends(get_current_site),
    two_factor_token: str | None = Depends(get_two_factor_token),
    coordinator: TwoFactorCoordinator = Depends(get_two_factor_coordinator),
):
    coordinator.pending_user(site, two_factor_token)
    model = VerifyCodePageData(provider=provider, return_url=return_url, remember_me=remember_me)
    return view_result(request, "VerifyCode", model.model_dump(mode="json"))


@router.post(
    "/VerifyCode",
    summary="校验安全码",
    description="错误安全码计入锁定次数；通过后建立会话并跳转到站内返回地址。",
    response_model=SuccessResponse[dict],
    responses=_PAGE_ERRORS,
)
def verify_code(
    payload: VerifyCodeRequest,
    request: Request,
    return_url: str | None = Query(default=None, alias="returnUrl"),
    site: Site = Depends(get_current_site),
    two_factor_token: str | None = Depends(get_two_factor_token),
    coordinator: TwoFactorCoordinator = Depends(get_two_factor_coordinator),
):
    outcome = coordinator.verify(
        site,
        two_factor_token,
        payload.provider,
        payload.code,
        return_url=return_url,
        remember_me=payload.remember_me,
        remember_browser=payload.remember_browser,
    )
    return redirect_result(
        request, outcome.redirect_url, _session_data(outcome.session, outcome.remember_browser_token)
    )


@router.get("/AccessDenied", summary="无权访问页", response_model=SuccessResponse[dict])
def access_denied(request: Request, site: Site = Depends(get_current_site)):
    return view_result(request, "AccessDenied", {"title": "出错了"})
