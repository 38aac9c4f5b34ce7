"""ORM 模型导出集合。"""

from tsp_api.models.site import Site
from tsp_api.models.user import SiteUser, UserLocation, UserLogin

__all__ = [
    "Site",
    "SiteUser",
    "UserLocation",
    "UserLogin",
]
