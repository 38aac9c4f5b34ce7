"""全局通用结构。

页面型接口不渲染 HTML，统一返回 `{request_id, data, meta}`：
`data` 为视图模型，`meta.view` 为应呈现的视图，`meta.redirect_url` 为应跳转的地址。
"""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field


class BaseSchema(BaseModel):
    """基础结构，开启对象映射能力。"""

    model_config = ConfigDict(from_attributes=True)


class ErrorPayload(BaseSchema):
    """错误主体。"""

    code: str = Field(description="机器可识别错误码。")
    message: str = Field(description="人类可读错误信息。")
    details: dict[str, Any] = Field(
        default_factory=dict, description="扩展错误细节：字段错误、应呈现的视图或跳转地址。"
    )


class ErrorResponse(BaseSchema):
    """统一错误响应。"""

    request_id: str = Field(description="请求追踪 ID。")
    error: ErrorPayload = Field(description="错误主体。")


T = TypeVar("T")


class SuccessResponse(BaseSchema, Generic[T]):
    """统一成功响应。"""

    request_id: str = Field(description="请求追踪 ID。")
    data: T = Field(description="视图模型或业务数据。")
    meta: dict[str, Any] = Field(default_factory=dict, description="view / redirect_url 等扩展元信息。")
