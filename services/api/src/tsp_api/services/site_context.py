"""站点（租户）上下文解析。"""

from __future__ import annotations

from urllib.parse import urlencode

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tsp_api.core.config import get_settings
from tsp_api.models.enums import SiteStatus
from tsp_api.models.site import Site


def _normalize_host(host: str | None) -> str | None:
    if not host:
        return None
    # 去掉端口，主机名不区分大小写。
    return host.split(":", 1)[0].strip().lower() or None


def resolve_site(db: Session, *, host: str | None, alias: str | None) -> Site | None:
    """依次按站点别名头、主机名、默认别名解析当前站点，仅返回可用站点。"""
    candidates: list = []
    if alias and alias.strip():
        candidates.append(Site.alias_id == alias.strip())
    normalized_host = _normalize_host(host)
    if normalized_host:
        candidates.append(func.lower(Site.hostname) == normalized_host)
    candidates.append(Site.alias_id == get_settings().default_site_alias)

    for condition in candidates:
        site = db.execute(select(Site).where(condition)).scalar_one_or_none()
        if site is not None:
            return site if site.status == SiteStatus.ACTIVE else None
    return None


def site_root_url(site: Site) -> str:
    """站点根地址，目录型租户为 /{folder}。"""
    folder = (site.site_folder_name or "").strip("/")
    return f"/{folder}" if folder else "/"


def is_local_url(url: str | None) -> bool:
    """仅允许站内相对路径，拒绝 //host 与 /\\host 形式的协议相对地址（含 ~/ 前缀写法）。"""
    if not url:
        return False
    if url.startswith("/"):
        return len(url) == 1 or url[1] not in {"/", "\\"}
    if url.startswith("~/"):
        return len(url) == 2 or url[2] not in {"/", "\\"}
    return False


def local_redirect_target(site: Site, return_url: str | None) -> str:
    """返回地址合法时原样使用，否则回到站点根。"""
    if return_url and is_local_url(return_url):
        return "/" + return_url[2:] if return_url.startswith("~/") else return_url
    return site_root_url(site)


def account_url(site: Site, action: str, **params: object) -> str:
    """站内账号页面地址，值为 None 的参数不写入查询串。"""
    root = site_root_url(site).rstrip("/")
    query = urlencode(
        {
            key: (str(value).lower() if isinstance(value, bool) else str(value))
            for key, value in params.items()
            if value is not None
        }
    )
    url = f"{root}/Account/{action}"
    return f"{url}?{query}" if query else url
