"""
app.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~

直播记录 REST 接口的应答体。

``/api/streams`` 下的查询与创建、全局异常处理器都用它包装返回值；
Socket 事件走各自的负载模型（``app.schemas.presence``），失败时发 ``error`` 事件，
不经过这里。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """REST 应答体 ``{"code": ..., "data": ..., "msg": ...}``。

    Attributes:
        code: 200 表示成功；失败时与 HTTP 状态码一致（403 / 404 / 500）。
        data: 直播记录、直播列表快照，失败时为 ``None``。
        msg: 状态说明，失败时是给客户端看的原因。
    """

    code: int = Field(default=200, description="状态码，失败时与 HTTP 状态码一致")
    data: T = Field(..., description="直播记录或列表快照")
    msg: str = Field(default="success", description="状态说明")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)


def error_response(status_code: int, msg: str) -> JSONResponse:
    """HTTP 状态码与应答体 ``code`` 一致的失败响应。"""
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse.fail(msg=msg, code=status_code).model_dump(),
    )
