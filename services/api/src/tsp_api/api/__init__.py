"""路由模块导出集合。"""

from . import account, health

__all__ = ["account", "health"]
