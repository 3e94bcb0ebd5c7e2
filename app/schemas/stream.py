"""
app.schemas.stream
~~~~~~~~~~~~~~~~~~

直播记录与用户身份的 Pydantic 模型。

``StreamRecord`` 对应 MongoDB ``streams`` 集合中的文档（蛇形命名），
``Identity`` 是鉴权通过后挂在连接上的只读身份快照。
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

StreamStatus = Literal["offline", "active"]


class Identity(BaseModel):
    """已验证的用户身份（连接建立时写入，生命周期内不可变）。"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="用户 ID")
    display_name: str = Field(..., description="显示名称")
    handle: str | None = Field(default=None, description="用户名 / 账号")
    role: str = Field(..., description="身份角色")
    avatar: str = Field(..., description="头像 URL（缺省时为占位图）")


class StreamRecord(BaseModel):
    """直播记录。"""

    uid: str = Field(..., description="直播唯一标识")
    title: str = Field(..., description="直播标题")
    owner_id: str = Field(..., description="所有者用户 ID")
    status: StreamStatus = Field(default="offline", description="生命周期状态")
    playback_url: str | None = Field(default=None, description="播放地址")
    display_name: str | None = Field(default=None, description="主播显示名称")
    handle: str | None = Field(default=None, description="主播用户名")
    avatar_url: str | None = Field(default=None, description="主播头像")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="最后更新时间")


class StreamCreateRequest(BaseModel):
    """创建直播请求体。"""

    title: str = Field(
        default="My Stream", min_length=1, max_length=120, description="直播标题",
    )
    playback_url: str | None = Field(default=None, description="外部推流服务给出的播放地址")
