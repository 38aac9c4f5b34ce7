"""reCAPTCHA 校验。"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging

import httpx

from tsp_api.core.config import Settings
from tsp_api.exceptions import ExternalServiceFailure, ValidationFailure
from tsp_api.models.site import Site

logger = logging.getLogger("tsp_api.captcha")


class CaptchaServiceError(Exception):
    """校验服务不可达或返回异常。"""


@dataclass
class CaptchaResult:
    success: bool
    error_codes: list[str] = field(default_factory=list)


class RecaptchaVerifier:
    """调用 siteverify 校验客户端提交的 reCAPTCHA 响应。"""

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    def verify(self, secret: str, response_token: str | None, remote_ip: str | None) -> CaptchaResult:
        if not response_token:
            return CaptchaResult(success=False, error_codes=["missing-input-response"])
        payload = {"secret": secret, "response": response_token}
        if remote_ip:
            payload["remoteip"] = remote_ip
        try:
            with httpx.Client(transport=self._transport, timeout=self._settings.recaptcha_timeout_seconds) as client:
                response = client.post(self._settings.recaptcha_verify_url, data=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CaptchaServiceError(str(exc)) from exc
        if not isinstance(body, dict):
            raise CaptchaServiceError("unexpected siteverify response")

        result = CaptchaResult(success=bool(body.get("success")), error_codes=list(body.get("error-codes") or []))
        if not result.success:
            # 错误码只进日志，不回显给用户。
            logger.info("recaptcha rejected: %s", ",".join(result.error_codes) or "unknown")
        return result


CAPTCHA_ERROR_MESSAGE = "reCAPTCHA 校验失败，请重试。"


def captcha_error(
    verifier: RecaptchaVerifier, site: Site, response_token: str | None, remote_ip: str | None
) -> str | None:
    """校验站点 reCAPTCHA，未通过时返回表单错误文案；校验服务不可用时抛出外部服务错误。"""
    try:
        result = verifier.verify(site.recaptcha_private_key, response_token, remote_ip)
    except CaptchaServiceError as exc:
        logger.warning("recaptcha unavailable site=%s: %s", site.alias_id, exc)
        raise ExternalServiceFailure() from exc
    return None if result.success else CAPTCHA_ERROR_MESSAGE


def ensure_captcha(
    verifier: RecaptchaVerifier,
    site: Site,
    response_token: str | None,
    remote_ip: str | None,
    *,
    view: str,
) -> None:
    message = captcha_error(verifier, site, response_token, remote_ip)
    if message:
        raise ValidationFailure.single("recaptcha", message, view=view)
