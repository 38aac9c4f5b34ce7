"""账号来源 IP 记录。"""

from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from tsp_api.models.site import Site
from tsp_api.models.user import SiteUser, UserLocation


def client_ip(request: Request) -> str | None:
    """从代理头或连接信息中提取客户端 IP。"""
    # 优先读取反向代理透传头，兼容网关/负载均衡场景。
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    if request.client:
        return request.client.host
    return None


class IpAddressTracker:
    """同一账号同一 IP 只保留一条记录，重复出现时累计次数。"""

    def __init__(self, db: Session) -> None:
        self._db = db

    def track(self, site: Site, user: SiteUser, ip_address: str | None) -> None:
        if not ip_address:
            return
        now = datetime.now(timezone.utc)
        location = self._db.execute(
            select(UserLocation)
            .where(UserLocation.user_id == user.id)
            .where(UserLocation.ip_address == ip_address)
        ).scalar_one_or_none()
        if location is None:
            self._db.add(
                UserLocation(
                    site_id=site.id,
                    user_id=user.id,
                    ip_address=ip_address,
                    first_captured_at=now,
                    last_captured_at=now,
                    capture_count=1,
                )
            )
        else:
            location.last_captured_at = now
            location.capture_count += 1
        self._db.commit()
