"""外部身份提供方：挑战跳转、断言校验与待确认外部身份令牌。

身份代理完成认证后携带签名断言回调本服务，断言按 provider 配置校验：
配置了 jwks_url 时使用密钥集合，否则使用共享密钥。
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
from urllib.parse import urlencode

import jwt
from jwt import PyJWKClient, PyJWTError

from tsp_api.core.config import ExternalProviderConfig, Settings
from tsp_api.models.enums import TokenPurpose
from tsp_api.models.site import Site
from tsp_api.services.local_auth import decode_token, issue_token

logger = logging.getLogger("tsp_api.external_login")

# 共享密钥只接受 HMAC 算法，密钥集合只接受非对称算法。
_HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")
_ASYMMETRIC_ALGORITHMS = ("RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512")


class ExternalIdentityError(Exception):
    """外部身份不可用或断言无效。"""


@dataclass
class ExternalLoginInfo:
    """已校验的外部身份。"""

    provider: str
    provider_key: str
    display_name: str
    email: str | None = None
    name: str | None = None


def _allowed_algorithms(config: ExternalProviderConfig) -> list[str]:
    family = _ASYMMETRIC_ALGORITHMS if config.jwks_url else _HMAC_ALGORITHMS
    configured = config.algorithms or list(family)
    return [item for item in configured if item in family]


@lru_cache
def _get_jwks_client(jwks_url: str) -> PyJWKClient:
    """缓存密钥集合客户端，减少重复网络开销。"""
    return PyJWKClient(jwks_url)


class ExternalLoginService:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def provider_config(self, site: Site, provider: str) -> ExternalProviderConfig | None:
        """站点已启用且服务端已配置时返回 provider 配置。"""
        if provider not in site.enabled_social_providers:
            return None
        return self._settings.external_providers.get(provider)

    def challenge_url(self, site: Site, provider: str, *, callback_url: str) -> str:
        config = self.provider_config(site, provider)
        if config is None:
            raise ExternalIdentityError(f"provider not available: {provider}")
        separator = "&" if "?" in config.authorize_url else "?"
        query = urlencode({"provider": provider, "site": site.alias_id, "redirect_uri": callback_url})
        return f"{config.authorize_url}{separator}{query}"

    def read_assertion(self, site: Site, provider: str, assertion: str | None) -> ExternalLoginInfo:
        """校验身份代理回传的断言并提取外部身份。"""
        config = self.provider_config(site, provider)
        if config is None or not assertion:
            raise ExternalIdentityError("missing provider or assertion")

        if not config.jwks_url and not config.shared_secret:
            raise ExternalIdentityError(f"no verification key configured for {provider}")
        algorithms = _allowed_algorithms(config)
        if not algorithms:
            raise ExternalIdentityError(f"no usable algorithm configured for {provider}")

        options = {"verify_signature": True, "verify_aud": bool(config.audience)}
        try:
            if config.jwks_url:
                key = _get_jwks_client(config.jwks_url).get_signing_key_from_jwt(assertion).key
            else:
                key = config.shared_secret
            claims = jwt.decode(
                assertion,
                key=key,
                algorithms=algorithms,
                issuer=config.issuer,
                audience=config.audience,
                leeway=self._settings.auth_jwt_leeway_seconds,
                options=options,
            )
        except (PyJWTError, ValueError) as exc:
            logger.info("external assertion rejected provider=%s: %s", provider, exc)
            raise ExternalIdentityError("invalid assertion") from exc

        subject = str(claims.get("sub") or "").strip()
        if not subject:
            raise ExternalIdentityError("assertion has no subject")
        return ExternalLoginInfo(
            provider=provider,
            provider_key=subject,
            display_name=config.display_name or provider,
            email=claims.get("email"),
            name=claims.get("name"),
        )

    def issue_pending(self, site: Site, info: ExternalLoginInfo) -> str:
        """外部身份已校验但尚未绑定账号时，签发待确认令牌。"""
        return issue_token(
            TokenPurpose.EXTERNAL_LOGIN,
            subject=info.provider_key,
            site_id=site.id,
            ttl_seconds=self._settings.auth_external_login_ttl_seconds,
            extra={
                "provider": info.provider,
                "provider_display_name": info.display_name,
                "email": info.email,
                "name": info.name,
            },
        ).token

    def read_pending(self, site: Site, token: str | None) -> ExternalLoginInfo | None:
        if not token:
            return None
        claims = decode_token(token, TokenPurpose.EXTERNAL_LOGIN, site_id=site.id)
        if claims is None or not claims.get("provider"):
            return None
        return ExternalLoginInfo(
            provider=claims["provider"],
            provider_key=claims["sub"],
            display_name=claims.get("provider_display_name") or claims["provider"],
            email=claims.get("email"),
            name=claims.get("name"),
        )
