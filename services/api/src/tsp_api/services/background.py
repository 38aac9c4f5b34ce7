"""脱离请求路径的后台投递。

确认邮件、重置邮件与审批通知不阻塞响应：在响应返回后执行，
失败只进入日志，不影响已返回给调用方的结果。
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
from typing import Any

from fastapi import BackgroundTasks

logger = logging.getLogger("tsp_api.background")


async def run_detached(label: str, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> None:
    """执行一次后台投递，异常记录后吞掉。"""
    try:
        await func(*args, **kwargs)
    except Exception:
        logger.exception("detached task failed: %s", label)
    else:
        logger.debug("detached task done: %s", label)


class DetachedDispatcher:
    """把投递排入当前请求的后台任务队列。"""

    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._tasks = background_tasks

    def detach(self, label: str, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> None:
        self._tasks.add_task(run_detached, label, func, *args, **kwargs)
