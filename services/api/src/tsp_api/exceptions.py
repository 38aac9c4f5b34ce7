"""账号流程错误分类与应用异常处理注册。"""

from dataclasses import dataclass
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tsp_api.utils.response import DEFAULT_ERROR_MESSAGE, error_payload

logger = logging.getLogger("tsp_api.errors")

# 凭据错误与策略闸门失败共用同一提示，避免暴露账号是否存在。
INVALID_LOGIN_MESSAGE = "登录尝试无效。"
INVALID_CODE_MESSAGE = "验证码无效。"


@dataclass
class FieldError:
    """表单字段级错误，field 为空表示整表单错误。"""

    field: str
    message: str


class AccountFlowError(Exception):
    """账号流程错误基类，由协调器抛出、在接口边界统一转换。"""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "ACCOUNT_FLOW_ERROR"
    reason = "account_flow_error"
    message = "请求处理失败。"
    view: str | None = None

    def __init__(self, message: str | None = None, *, redirect_url: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.redirect_url = redirect_url

    def details(self) -> dict[str, Any]:
        details: dict[str, Any] = {"status_code": self.status_code, "reason": self.reason}
        if self.view:
            details["view"] = self.view
        if self.redirect_url:
            details["redirect_url"] = self.redirect_url
        return details


class ValidationFailure(AccountFlowError):
    """输入不合法，在表单内逐字段提示。"""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    code = "VALIDATION_ERROR"
    reason = "validation_error"
    message = "请求参数校验失败。"

    def __init__(self, errors: list[FieldError], *, view: str | None = None) -> None:
        super().__init__()
        self.errors = errors
        self.view = view

    @classmethod
    def single(cls, field: str, message: str, *, view: str | None = None) -> "ValidationFailure":
        return cls([FieldError(field=field, message=message)], view=view)

    def details(self) -> dict[str, Any]:
        details = super().details()
        details["errors"] = [{"field": item.field, "message": item.message} for item in self.errors]
        return details


class AuthenticationFailure(AccountFlowError):
    """凭据错误或登录闸门拒绝，对外只呈现统一提示。"""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_LOGIN"
    reason = "invalid_login"
    message = INVALID_LOGIN_MESSAGE
    view = "Login"


class LockedOutFailure(AccountFlowError):
    """账号处于锁定窗口，本次请求终止。"""

    status_code = status.HTTP_423_LOCKED
    code = "LOCKED_OUT"
    reason = "locked_out"
    message = "账号已被临时锁定，请稍后再试。"
    view = "Lockout"


class ExternalServiceFailure(AccountFlowError):
    """外部协作方（验证码校验、验证码生成/投递、外部身份）失败。"""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "EXTERNAL_SERVICE_ERROR"
    reason = "external_service_error"
    message = "处理请求时出现错误，请稍后重试。"
    view = "Error"


class NotAllowedFailure(AccountFlowError):
    """站点策略不允许登录，引导到待审批页面。"""

    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_ALLOWED"
    reason = "not_allowed"
    message = "账号尚未获准登录。"
    view = "PendingApproval"


def _default_http_error_code(status_code: int) -> str:
    if status_code == status.HTTP_400_BAD_REQUEST:
        return "BAD_REQUEST"
    if status_code == status.HTTP_401_UNAUTHORIZED:
        return "UNAUTHORIZED"
    if status_code == status.HTTP_403_FORBIDDEN:
        return "FORBIDDEN"
    if status_code == status.HTTP_404_NOT_FOUND:
        return "NOT_FOUND"
    if status_code == status.HTTP_422_UNPROCESSABLE_CONTENT:
        return "VALIDATION_ERROR"
    return "HTTP_ERROR"


def _default_http_message(status_code: int) -> str:
    if status_code == status.HTTP_400_BAD_REQUEST:
        return "请求参数不合法。"
    if status_code == status.HTTP_401_UNAUTHORIZED:
        return "未登录或登录状态已失效。"
    if status_code == status.HTTP_403_FORBIDDEN:
        return "无权限访问该资源。"
    if status_code == status.HTTP_404_NOT_FOUND:
        return "请求资源不存在。"
    if status_code == status.HTTP_422_UNPROCESSABLE_CONTENT:
        return "请求参数校验失败。"
    return "请求处理失败。"


def _parse_http_detail(detail: object, status_code: int) -> tuple[str, str, dict[str, object]]:
    code = _default_http_error_code(status_code)
    message = _default_http_message(status_code)
    details: dict[str, object] = {"status_code": status_code, "reason": code.lower()}

    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or message)
        raw_details = detail.get("details")
        if isinstance(raw_details, dict):
            details.update(raw_details)
        return code, message, details

    if isinstance(detail, str) and detail.strip().lower() not in {"unauthorized", "not found", "forbidden"}:
        message = detail
    return code, message, details


async def account_flow_exception_handler(request: Request, exc: AccountFlowError):
    """将账号流程错误包装为标准错误结构。"""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(request, code=exc.code, message=exc.message, details=exc.details()),
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """将协议异常统一包装为标准错误结构。"""
    code, message, details = _parse_http_detail(exc.detail, exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(request, code=code, message=message, details=details),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """统一处理请求参数校验错误。"""
    normalized_errors = [
        {
            "field": ".".join(str(item) for item in err.get("loc", []) if item not in {"body", "query"}),
            "message": err.get("msg"),
            "type": err.get("type"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
        content=error_payload(
            request,
            code="VALIDATION_ERROR",
            message="请求参数校验失败。",
            details={
                "status_code": status.HTTP_422_UNPROCESSABLE_CONTENT,
                "reason": "validation_error",
                "errors": normalized_errors,
            },
        ),
    )


async def unexpected_exception_handler(request: Request, exc: Exception):
    """处理未捕获异常，避免内部细节泄露。"""
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload(
            request,
            code="INTERNAL_ERROR",
            message=DEFAULT_ERROR_MESSAGE,
            details={
                "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
                "reason": "unexpected_exception",
                "suggestion": "请稍后重试，若持续失败请联系管理员并提供 request_id。",
            },
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """集中注册异常处理器。"""
    app.exception_handler(AccountFlowError)(account_flow_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(Exception)(unexpected_exception_handler)
