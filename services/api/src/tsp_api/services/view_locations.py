"""按站点与主题展开模板查找路径。

位置模板中 `{0}` 为视图名，`{1}` 为控制器名。
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

DEFAULT_TEMPLATE_EXTENSION = ".html"

# 站点未提供覆盖时使用的内置位置。
DEFAULT_VIEW_LOCATIONS: tuple[str, ...] = (
    "/Views/{1}/{0}.html",
    "/Views/Shared/{0}.html",
    "/Views/EmailTemplates/{0}.html",
)


def _extension_of(default_locations: Sequence[str]) -> str:
    for location in default_locations:
        tail = location.rsplit("/", 1)[-1]
        if "." in tail:
            return "." + tail.rsplit(".", 1)[-1]
    return DEFAULT_TEMPLATE_EXTENSION


def expand_location_formats(
    tenant_key: str | None,
    theme_key: str | None,
    default_locations: Iterable[str],
) -> list[str]:
    """站点+主题位置在前，默认位置原样在后；缺少站点或主题时只返回默认位置。"""
    defaults = list(default_locations)
    if not tenant_key or not theme_key:
        return defaults
    ext = _extension_of(defaults)
    prefix = f"/sitefiles/{tenant_key}/themes/{theme_key}"
    return [
        f"{prefix}/{{1}}/{{0}}{ext}",
        f"{prefix}/Shared/{{0}}{ext}",
        f"{prefix}/EmailTemplates/{{0}}{ext}",
        *defaults,
    ]


def expand(
    tenant_key: str | None,
    theme_key: str | None,
    requested_view: str,
    default_locations: Iterable[str] = DEFAULT_VIEW_LOCATIONS,
    *,
    controller: str = "Account",
) -> list[str]:
    """返回某个视图按优先级排列的候选路径，是否存在由模板加载方判断。"""
    return [
        location.replace("{0}", requested_view).replace("{1}", controller)
        for location in expand_location_formats(tenant_key, theme_key, default_locations)
    ]
