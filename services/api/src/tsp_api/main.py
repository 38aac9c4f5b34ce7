"""FastAPI 应用入口点。"""

import logging

from fastapi import FastAPI

from tsp_api.api.router import api_router
from tsp_api.core.config import get_settings
from tsp_api.exceptions import register_exception_handlers
from tsp_api.middlewares import register_middlewares

settings = get_settings()


def _setup_logging() -> None:
    """配置进程级日志格式与级别。"""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app() -> FastAPI:
    """创建并配置 FastAPI 应用实例。"""
    _setup_logging()
    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        debug=settings.app_debug,
        description=(
            "多站点账号服务接口。\n\n"
            "页面接口统一返回：`{request_id, data, meta}`，`meta.view` 为应呈现的视图，"
            "`meta.redirect_url` 为应跳转的地址。\n"
            "站点上下文：`X-Site-Alias` 头，其次按主机名，最后回退到默认站点。\n"
            "登录会话通过 `Authorization: Bearer` 传递。"
        ),
        openapi_tags=[
            {"name": "health", "description": "服务存活与就绪检查。"},
            {"name": "account", "description": "登录、注册、外部登录、邮箱确认、密码重置与双因素验证。"},
        ],
    )

    register_middlewares(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()
