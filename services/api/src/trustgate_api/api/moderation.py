"""社区管理接口（owner/admin/moderator）。"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status

from trustgate_api.dependencies import RequestContext, TrustRuntime, get_trust_runtime, require_moderator
from trustgate_api.schemas.common import ErrorResponse, SuccessResponse
from trustgate_api.schemas.moderation import (
    BanCreateRequest,
    BanData,
    BanLiftData,
    RoleAssignData,
    RoleAssignRequest,
    WarningCountData,
    WarningCreatedData,
    WarningCreateRequest,
)
from trustgate_api.services.audit import audit_context_from_request
from trustgate_api.utils.response import success

router = APIRouter(prefix="/moderation", tags=["moderation"])


@router.post(
    "/bans",
    summary="封禁用户",
    description="写入封禁记录；expires_at 为空表示永久封禁。被封禁用户的门禁判定流会立即收到变化。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[BanData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def create_ban(
    payload: BanCreateRequest,
    request: Request,
    ctx: RequestContext = Depends(require_moderator),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    record = runtime.moderation.ban_user(
        actor_id=ctx.user_id,
        user_id=payload.user_id,
        reason=payload.reason,
        expires_at=payload.expires_at,
        audit=audit_context_from_request(request),
    )
    return success(request, BanData.model_validate(record).model_dump())


@router.post(
    "/bans/{user_id}/lift",
    summary="解除封禁",
    description="软解封：保留封禁历史，仅写入解封时间与解封人。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[BanLiftData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def lift_ban(
    user_id: UUID,
    request: Request,
    ctx: RequestContext = Depends(require_moderator),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    lifted = runtime.moderation.lift_ban(
        actor_id=ctx.user_id,
        user_id=user_id,
        audit=audit_context_from_request(request),
    )
    return success(request, {"user_id": user_id, "lifted": lifted})


@router.get(
    "/bans",
    summary="封禁记录列表",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[list[BanData]],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def list_bans(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: RequestContext = Depends(require_moderator),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    records = runtime.moderation.list_bans(actor_id=ctx.user_id, limit=limit)
    return success(request, [BanData.model_validate(record).model_dump() for record in records])


@router.post(
    "/warnings",
    summary="警告用户",
    description="写入警告记录，用户确认前只能停留在警告确认页。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[WarningCreatedData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def create_warning(
    payload: WarningCreateRequest,
    request: Request,
    ctx: RequestContext = Depends(require_moderator),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    record = runtime.moderation.warn_user(
        actor_id=ctx.user_id,
        user_id=payload.user_id,
        reason=payload.reason,
        severity=payload.severity,
        audit=audit_context_from_request(request),
    )
    return success(request, WarningCreatedData.model_validate(record).model_dump())


@router.get(
    "/users/{user_id}/warnings/count",
    summary="用户警告次数",
    description="统计用户历史警告总数（含已确认）。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[WarningCountData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def warning_count(
    user_id: UUID,
    request: Request,
    ctx: RequestContext = Depends(require_moderator),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    count = runtime.moderation.warning_count(actor_id=ctx.user_id, user_id=user_id)
    return success(request, {"user_id": user_id, "warning_count": count})


@router.post(
    "/users/{user_id}/roles",
    summary="授予平台角色",
    description="仅 owner/admin 可授予角色，owner 角色只能由 owner 授予。用户已持有该角色时返回 assigned=false。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[RoleAssignData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def assign_role(
    user_id: UUID,
    payload: RoleAssignRequest,
    request: Request,
    ctx: RequestContext = Depends(require_moderator),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    assigned = runtime.moderation.assign_role(
        actor_id=ctx.user_id,
        user_id=user_id,
        role=payload.role,
        audit=audit_context_from_request(request),
    )
    return success(request, {"user_id": user_id, "role": payload.role, "assigned": assigned})
