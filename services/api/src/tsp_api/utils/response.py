"""统一响应结构工具。

页面型接口不渲染 HTML，而是返回视图模型：
`meta.view` 指明前端应呈现的视图名，`meta.redirect_url` 指明应跳转的地址。
"""

from datetime import datetime, timezone
from time import perf_counter
from typing import Any

from fastapi import Request

DEFAULT_ERROR_MESSAGE = "internal server error"

_SUCCESS_MESSAGE_BY_METHOD = {
    "GET": "查询成功。",
    "POST": "操作成功。",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "") or "-"


def _default_success_meta(request: Request) -> dict[str, Any]:
    elapsed_ms = None
    started_at = getattr(request.state, "request_started_at", None)
    if isinstance(started_at, float):
        elapsed_ms = int((perf_counter() - started_at) * 1000)
    return {
        "message": _SUCCESS_MESSAGE_BY_METHOD.get(request.method.upper(), "操作成功。"),
        "method": request.method.upper(),
        "path": request.url.path,
        "timestamp": _utc_now_iso(),
        "process_ms": elapsed_ms,
    }


def success(request: Request, data: Any, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    """构造统一成功响应结构。"""
    final_meta = _default_success_meta(request)
    if meta:
        final_meta.update(meta)
    return {
        "request_id": _request_id(request),
        "data": data,
        "meta": final_meta,
    }


def view_result(request: Request, view: str, model: Any = None, *, message: str | None = None) -> dict[str, Any]:
    """返回一个待呈现的视图及其模型。"""
    meta: dict[str, Any] = {"view": view, "redirect_url": None}
    if message:
        meta["message"] = message
    return success(request, model if model is not None else {}, meta)


def redirect_result(
    request: Request, url: str, data: Any = None, *, message: str | None = None
) -> dict[str, Any]:
    """返回一个跳转指令，data 可携带跳转后需要的令牌等信息。"""
    meta: dict[str, Any] = {"view": None, "redirect_url": url}
    if message:
        meta["message"] = message
    return success(request, data if data is not None else {}, meta)


def error_payload(
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """构造统一错误响应结构。"""
    final_details = {
        "method": request.method.upper(),
        "path": request.url.path,
        "timestamp": _utc_now_iso(),
    }
    if details:
        final_details.update(details)
    return {
        "request_id": _request_id(request),
        "error": {
            "code": code,
            "message": message,
            "details": final_details,
        },
    }
