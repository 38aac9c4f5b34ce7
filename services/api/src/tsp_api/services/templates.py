"""站点感知的模板渲染。

站点目录（template_root 下的 sitefiles/...）优先，包内置模板兜底；
候选路径由 view_locations 展开，第一个存在的模板胜出。
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from tsp_api.core.config import get_settings
from tsp_api.models.site import Site
from tsp_api.services.view_locations import DEFAULT_VIEW_LOCATIONS, expand

PACKAGED_TEMPLATES = Path(__file__).resolve().parent.parent / "templates"


class SiteTemplateRenderer:
    """按站点主题查找并渲染模板。"""

    def __init__(self, template_root: str) -> None:
        self._env = Environment(
            loader=FileSystemLoader([template_root, str(PACKAGED_TEMPLATES)]),
            autoescape=select_autoescape(["html"]),
        )

    def candidates(self, site: Site, view: str, *, controller: str = "Account") -> list[str]:
        # 加载器名称不带前导斜杠。
        return [
            path.lstrip("/")
            for path in expand(site.alias_id, site.theme, view, DEFAULT_VIEW_LOCATIONS, controller=controller)
        ]

    def render(self, site: Site, view: str, context: dict[str, Any], *, controller: str = "Account") -> str:
        template = self._env.select_template(self.candidates(site, view, controller=controller))
        return template.render(site_name=site.site_name, **context)


@lru_cache
def get_template_renderer() -> SiteTemplateRenderer:
    """进程内共享的渲染器。"""
    return SiteTemplateRenderer(get_settings().template_root)
