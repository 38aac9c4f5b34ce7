"""非页面接口的 `data` 结构。"""

from pydantic import Field

from tsp_api.schemas.common import BaseSchema


class HealthStatusData(BaseSchema):
    """健康检查返回结构。"""

    status: str = Field(description="健康状态值，常见为 ok 或 ready。")
    default_site: str | None = Field(default=None, description="就绪检查解析到的默认站点别名。")
    revocation_store: str | None = Field(default=None, description="会话吊销名单存储：local、ok 或 unavailable。")


class LogOffData(BaseSchema):
    revoked: bool = Field(description="当前会话令牌是否已被吊销。")
