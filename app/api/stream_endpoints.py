"""
app.api.stream_endpoints
~~~~~~~~~~~~~~~~~~~~~~~~

直播记录 REST 接口 —— 无状态的查询与创建。

路由前缀 ``/api/streams``。开播 / 下播只能通过 Socket 事件完成。

端点:
  - ``GET  /streams``         → 开播中的直播（附实时观众数）
  - ``GET  /streams/mine``    → 当前用户的全部直播
  - ``GET  /streams/{uid}``   → 单条直播记录
  - ``POST /streams``         → 创建直播记录（仅主播角色）
"""
from fastapi import APIRouter, Depends, Request
from app.api.deps import get_current_identity, get_presence_coordinator, get_stream_directory
from app.core.rate_limit import limiter
from app.schemas.api_response import ApiResponse, error_response
from app.schemas.presence import StreamsListData
from app.schemas.stream import Identity, StreamCreateRequest, StreamRecord
from app.services.presence import PresenceCoordinator, StreamDirectory

router: APIRouter = APIRouter()


@router.get("/streams", summary="开播中的直播列表", response_model=ApiResponse[StreamsListData])
@limiter.limit("10/second")
async def list_active_streams(
    request: Request,
    coordinator: PresenceCoordinator = Depends(get_presence_coordinator),
):
    """与 Socket ``streams-list`` 相同的快照。"""
    snapshot = await coordinator.build_streams_snapshot()
    return ApiResponse.ok(data=snapshot)


@router.get("/streams/mine", summary="我的直播", response_model=ApiResponse[list[StreamRecord]])
@limiter.limit("10/second")
async def list_my_streams(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    directory: StreamDirectory = Depends(get_stream_directory),
):
    records = await directory.find_by_owner(identity.id)
    return ApiResponse.ok(data=records)


@router.get("/streams/{uid}", summary="直播详情", response_model=ApiResponse[StreamRecord])
@limiter.limit("10/second")
async def get_stream(
    request: Request,
    uid: str,
    directory: StreamDirectory = Depends(get_stream_directory),
):
    """返回单条直播记录，不存在时返回 404 应答体。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        uid: 直播唯一标识。
    """
    record = await directory.find_by_id(uid)
    if record is None:
        return error_response(404, "stream not found")
    return ApiResponse.ok(data=record)


@router.post("/streams", summary="创建直播", response_model=ApiResponse[StreamRecord])
@limiter.limit("1/second")
async def create_stream(
    request: Request,
    body: StreamCreateRequest,
    identity: Identity = Depends(get_current_identity),
    coordinator: PresenceCoordinator = Depends(get_presence_coordinator),
):
    """为当前用户创建一条下播状态的直播记录。

    只有主播角色可以创建，其它角色返回 403 应答体。
    """
    if identity.role != coordinator.broadcaster_role:
        return error_response(403, "broadcaster role required")
    record = await coordinator.directory.create(identity, body.title, body.playback_url)
    return ApiResponse.ok(data=record)
