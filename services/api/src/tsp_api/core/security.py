"""会话令牌解析与吊销。"""

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from threading import Lock
from typing import Any
from uuid import UUID

from redis import Redis
from redis.exceptions import RedisError

from tsp_api.core.config import get_settings
from tsp_api.models.enums import TokenPurpose
from tsp_api.services.local_auth import decode_token

_LOCAL_BLACKLIST: dict[str, int] = {}
_LOCAL_LOCK = Lock()
_redis_client: Redis | None = None


@dataclass
class AuthenticatedSession:
    """已登录会话。"""

    user_id: UUID
    site_id: UUID
    persistent: bool
    # 原始声明集，登出时需要 jti/exp。
    claims: dict[str, Any]


def _cleanup_local(now_ts: int) -> None:
    expired_keys = [key for key, expires_at in _LOCAL_BLACKLIST.items() if expires_at <= now_ts]
    for key in expired_keys:
        _LOCAL_BLACKLIST.pop(key, None)


def _get_redis() -> Redis | None:
    global _redis_client
    settings = get_settings()
    if not settings.redis_url:
        return None
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def _key_for_jti(jti: str) -> str:
    return f"{get_settings().auth_token_blacklist_prefix}{jti}"


def revoke_token_jti(jti: str, exp_ts: int) -> None:
    """将会话 jti 拉黑到令牌过期时间。"""
    now_ts = int(datetime.now(timezone.utc).timestamp())
    ttl = max(1, exp_ts - now_ts)
    redis_client = _get_redis()
    if redis_client is not None:
        try:
            redis_client.setex(_key_for_jti(jti), ttl, "1")
            return
        except RedisError:
            # Redis 不可用时回退到本地名单，保证登出语义尽量可用。
            pass

    with _LOCAL_LOCK:
        _cleanup_local(now_ts)
        _LOCAL_BLACKLIST[jti] = exp_ts


def is_token_jti_revoked(jti: str) -> bool:
    """判断会话 jti 是否已被拉黑。"""
    redis_client = _get_redis()
    if redis_client is not None:
        try:
            return bool(redis_client.exists(_key_for_jti(jti)))
        except RedisError:
            pass

    now_ts = int(datetime.now(timezone.utc).timestamp())
    with _LOCAL_LOCK:
        _cleanup_local(now_ts)
        expires_at = _LOCAL_BLACKLIST.get(jti)
        return expires_at is not None and expires_at > now_ts


def revocation_store_status() -> str:
    """吊销名单存储状态：未配置 Redis 时为 local，配置后按 PING 结果返回 ok 或 unavailable。"""
    redis_client = _get_redis()
    if redis_client is None:
        return "local"
    try:
        redis_client.ping()
    except RedisError:
        return "unavailable"
    return "ok"


def extract_bearer_token(authorization: str | None) -> str | None:
    """从 Authorization 头中提取 Bearer token，兼容重复头被逗号拼接的场景。"""
    if not authorization:
        return None
    tokens = re.findall(r"Bearer\s+([^,\s]+)", authorization, flags=re.IGNORECASE)
    for candidate in reversed(tokens):
        token = candidate.strip()
        if token:
            return token
    return None


def read_session(authorization: str | None, *, site_id: UUID) -> AuthenticatedSession | None:
    """解析当前站点的会话，缺失、无效或已吊销时返回 None。"""
    token = extract_bearer_token(authorization)
    if token is None:
        return None
    claims = decode_token(token, TokenPurpose.SESSION, site_id=site_id)
    if claims is None:
        return None
    jti = claims.get("jti")
    if isinstance(jti, str) and jti and is_token_jti_revoked(jti):
        return None
    try:
        user_id = UUID(str(claims["sub"]))
    except ValueError:
        return None
    return AuthenticatedSession(
        user_id=user_id,
        site_id=site_id,
        persistent=bool(claims.get("persistent")),
        claims=claims,
    )

