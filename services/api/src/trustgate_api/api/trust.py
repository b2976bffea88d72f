"""门禁判定与信任状态接口。

前端在每次路由切换时调用判定接口；
需要实时响应封禁/警告变化时订阅判定流（SSE）。
"""

import asyncio
import json
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from trustgate_api.dependencies import (
    RequestContext,
    TrustRuntime,
    get_optional_trust_session,
    get_pending_context,
    get_request_context,
    get_trust_runtime,
)
from trustgate_api.schemas.common import ErrorResponse, SuccessResponse
from trustgate_api.schemas.trust import (
    BanStatusData,
    DecisionStreamRouteData,
    SessionDecisionData,
    WarningAcknowledgeData,
    WarningData,
    WarningListData,
)
from trustgate_api.services.session_gate import SessionDecision, TrustSession
from trustgate_api.utils.response import success

router = APIRouter(prefix="/trust", tags=["trust"])

# 空闲时的心跳间隔（秒）。
STREAM_KEEPALIVE_SECONDS = 15.0


def _decision_payload(decision: SessionDecision) -> dict:
    return SessionDecisionData.model_validate(decision).model_dump(mode="json")


def _decision_to_sse(decision: SessionDecision, seq: int) -> str:
    data = json.dumps(_decision_payload(decision), separators=(",", ":"), ensure_ascii=False)
    return f"id: {seq}\nevent: decision\ndata: {data}\n\n"


@router.get(
    "/decision",
    summary="门禁判定",
    description=(
        "返回当前会话访问目标路由的判定：放行、跳转封禁页、跳转警告页、跳转二次验证页或加载中。"
        "未携带令牌视为未登录，直接放行。"
    ),
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[SessionDecisionData],
    responses={401: {"model": ErrorResponse}},
)
async def get_decision(
    request: Request,
    route: str = Query(default="/", max_length=512, description="即将访问的前端路由。"),
    session: TrustSession | None = Depends(get_optional_trust_session),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    decision = await runtime.gate.evaluate(session, route)
    return success(request, _decision_payload(decision))


@router.get(
    "/decision/stream",
    summary="门禁判定流",
    description=(
        "以 Server-Sent Events 推送判定变化：封禁/警告记录变更、定时轮询与登出都会触发重新判定，"
        "仅在结果变化时推送。登出后流结束。"
        "首帧 `event: ready` 携带 stream_id；前端跟随 redirect_to 或切换路由后，"
        "应调用路由更新接口，否则判定仍按建立连接时的路由计算。"
    ),
    status_code=status.HTTP_200_OK,
    responses={401: {"model": ErrorResponse}},
)
async def stream_decisions(
    request: Request,
    route: str = Query(default="/", max_length=512, description="当前所在的前端路由。"),
    ctx: RequestContext = Depends(get_pending_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    watcher = runtime.gate.watch(ctx.session, route)

    async def _gen():
        seq = 0
        try:
            # 首帧告知流 ID，前端切换路由时据此更新判定路由。
            ready = json.dumps({"stream_id": watcher.id, "route": route}, separators=(",", ":"))
            yield f"event: ready\ndata: {ready}\n\n"
            while True:
                try:
                    decision = await asyncio.wait_for(watcher.next_decision(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                if decision is None:
                    yield ": stream closed\n\n"
                    break
                seq += 1
                yield _decision_to_sse(decision, seq)
        finally:
            await watcher.aclose()

    return StreamingResponse(_gen(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


@router.post(
    "/decision/stream/{stream_id}/route",
    summary="更新判定流路由",
    description="把进行中的判定流切换到新路由并立即重新判定。流不存在、已结束或不属于当前用户时返回 updated=false。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[DecisionStreamRouteData],
    responses={401: {"model": ErrorResponse}},
)
async def update_stream_route(
    stream_id: str,
    request: Request,
    route: str = Query(max_length=512, description="新的前端路由。"),
    ctx: RequestContext = Depends(get_pending_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    updated = runtime.gate.navigate(stream_id, ctx.user_id, route)
    return success(request, {"stream_id": stream_id, "route": route, "updated": updated})


@router.get(
    "/ban",
    summary="查询封禁状态",
    description="供封禁提示页展示原因与到期时间。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[BanStatusData],
    responses={401: {"model": ErrorResponse}},
)
def get_ban_status(
    request: Request,
    ctx: RequestContext = Depends(get_pending_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    ban = runtime.gate.ban_evaluator.evaluate(ctx.user_id)
    return success(
        request,
        {"is_banned": ban.is_banned, "reason": ban.reason, "expires_at": ban.expires_at, "degraded": ban.degraded},
    )


@router.get(
    "/warnings",
    summary="查询未确认警告",
    description="按创建时间倒序返回未确认警告，前端逐条展示 current。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[WarningListData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def list_warnings(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    status_ = runtime.gate.warning_evaluator.evaluate(ctx.user_id)
    warnings = [WarningData.model_validate(item).model_dump() for item in status_.warnings]
    return success(
        request,
        {
            "has_unacknowledged": status_.has_unacknowledged,
            "current": warnings[0] if warnings else None,
            "warnings": warnings,
            "degraded": status_.degraded,
        },
    )


@router.post(
    "/warnings/{warning_id}/acknowledge",
    summary="确认警告",
    description="确认单条警告，不可撤回。已确认或不存在的警告返回 acknowledged=false，不视为错误。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[WarningAcknowledgeData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def acknowledge_warning(
    warning_id: UUID,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    evaluator = runtime.gate.warning_evaluator
    acknowledged = evaluator.acknowledge(ctx.user_id, warning_id)
    remaining = evaluator.evaluate(ctx.user_id)
    return success(
        request,
        {
            "warning_id": warning_id,
            "acknowledged": acknowledged,
            "has_unacknowledged": remaining.has_unacknowledged,
        },
    )
