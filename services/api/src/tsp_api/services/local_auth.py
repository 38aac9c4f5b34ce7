"""本地凭据与令牌：口令哈希、按用途签发与解析令牌。"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

import jwt
from jwt import InvalidTokenError

from tsp_api.core.config import get_settings
from tsp_api.models.enums import TokenPurpose
from tsp_api.models.user import SiteUser


@dataclass
class IssuedToken:
    """签发结果。"""

    token: str
    jti: str
    expires_at: datetime

    @property
    def expires_in(self) -> int:
        return max(0, int((self.expires_at - datetime.now(timezone.utc)).total_seconds()))


def hash_password(password: str) -> str:
    """使用 PBKDF2-SHA256 生成口令哈希。"""
    settings = get_settings()
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        settings.auth_password_hash_iterations,
    )
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"pbkdf2_sha256${settings.auth_password_hash_iterations}${salt_b64}${digest_b64}"


def verify_password(password: str, password_hash: str | None) -> bool:
    """校验口令是否匹配，无本地口令的账号一律不匹配。"""
    if not password_hash:
        return False
    try:
        algorithm, iterations_text, salt_b64, expected_digest_b64 = password_hash.split("$", 3)
        if algorithm != "pbkdf2_sha256":
            return False
        iterations = int(iterations_text)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected_digest = base64.b64decode(expected_digest_b64.encode("ascii"))
    except (ValueError, TypeError, binascii.Error):
        return False

    actual_digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual_digest, expected_digest)


def new_security_stamp() -> str:
    return secrets.token_hex(16)


def issue_token(
    purpose: TokenPurpose,
    *,
    subject: str,
    site_id: UUID,
    ttl_seconds: int,
    stamp: str | None = None,
    extra: dict[str, Any] | None = None,
) -> IssuedToken:
    """按用途签发令牌，stamp 用于绑定账号当前安全戳。"""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(seconds=ttl_seconds)
    jti = str(uuid4())
    claims: dict[str, Any] = {
        "sub": subject,
        "sid": str(site_id),
        "purpose": str(purpose),
        "iss": settings.auth_jwt_issuer,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "jti": jti,
    }
    if stamp is not None:
        claims["stamp"] = stamp
    if extra:
        claims.update(extra)
    token = jwt.encode(claims, settings.auth_jwt_secret, algorithm=settings.auth_algorithms[0])
    return IssuedToken(token=token, jti=jti, expires_at=expires_at)


def decode_token(token: str, purpose: TokenPurpose, *, site_id: UUID) -> dict[str, Any] | None:
    """解析本服务签发的令牌，用途或站点不符、过期、篡改时返回 None。"""
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            key=settings.auth_jwt_secret,
            algorithms=settings.auth_algorithms,
            issuer=settings.auth_jwt_issuer,
            leeway=settings.auth_jwt_leeway_seconds,
            options={"require": ["exp", "sub", "purpose"]},
        )
    except InvalidTokenError:
        return None
    if claims.get("purpose") != str(purpose) or claims.get("sid") != str(site_id):
        return None
    return claims


def issue_session_token(user: SiteUser, *, persistent: bool) -> IssuedToken:
    """签发登录会话令牌，“记住我”使用更长有效期。"""
    settings = get_settings()
    ttl = settings.auth_persistent_session_ttl_seconds if persistent else settings.auth_session_ttl_seconds
    return issue_token(
        TokenPurpose.SESSION,
        subject=str(user.id),
        site_id=user.site_id,
        ttl_seconds=ttl,
        extra={
            "name": user.username,
            "email": user.email,
            "persistent": persistent,
        },
    )
