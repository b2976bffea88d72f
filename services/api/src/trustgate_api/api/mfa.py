"""两步验证接口。"""

from fastapi import APIRouter, Depends, Request, status

from trustgate_api.dependencies import (
    RequestContext,
    TrustRuntime,
    get_pending_context,
    get_request_context,
    get_trust_runtime,
)
from trustgate_api.models.enums import AuthAssurance, MfaState
from trustgate_api.schemas.common import ErrorResponse, SuccessResponse
from trustgate_api.schemas.mfa import (
    MfaChallengeData,
    MfaChallengeRequest,
    MfaCodeRequest,
    MfaConfirmData,
    MfaDisableData,
    MfaEnrollData,
    MfaLockoutData,
    MfaStatusData,
)
from trustgate_api.services.audit import audit_context_from_request
from trustgate_api.services.local_auth import issue_access_token
from trustgate_api.utils.response import success

router = APIRouter(prefix="/mfa", tags=["mfa"])


@router.get(
    "/status",
    summary="查询两步验证状态",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MfaStatusData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def get_status(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    result = runtime.mfa.status(ctx.user_id)
    return success(
        request,
        {
            "state": result.state,
            "factor_id": result.factor_id,
            "backup_codes_remaining": result.backup_codes_remaining,
        },
    )


@router.post(
    "/enroll",
    summary="开始绑定身份验证器",
    description="清理历史未完成的绑定后生成新密钥与备用码。密钥与备用码明文仅在本次响应中返回。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MfaEnrollData],
    responses={401: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def begin_enroll(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    ticket = runtime.mfa.begin_enroll(ctx.user_id, account_name=ctx.user.email)
    return success(
        request,
        {
            "factor_id": ticket.factor_id,
            "secret": ticket.secret,
            "otpauth_uri": ticket.otpauth_uri,
            "backup_codes": list(ticket.backup_codes),
        },
    )


@router.post(
    "/enroll/verify",
    summary="确认绑定",
    description="用身份验证器生成的首个动态口令确认绑定，成功后备用码生效，并返回已完成二次验证的令牌。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MfaConfirmData],
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def confirm_enroll(
    payload: MfaCodeRequest,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    result = runtime.mfa.confirm_enroll(ctx.user_id, payload.code)
    token, _exp_ts, expires_at, _jti = issue_access_token(ctx.user, assurance=AuthAssurance.AAL2)
    return success(
        request,
        {
            "state": result.state,
            "factor_id": result.factor_id,
            "backup_codes_remaining": result.backup_codes_remaining,
            "access_token": token,
            "expires_at": expires_at,
        },
    )


@router.delete(
    "/enroll",
    summary="取消绑定",
    description="删除未验证的因子及其备用码；不存在时视为无事可做。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MfaDisableData],
    responses={401: {"model": ErrorResponse}},
)
def cancel_enroll(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    removed = runtime.mfa.cancel_enroll(ctx.user_id)
    return success(request, {"state": runtime.mfa.status(ctx.user_id).state, "factors_removed": removed})


@router.post(
    "/challenge",
    summary="登录二次验证",
    description=(
        "使用动态口令或备用码完成二次验证，成功后返回完整会话令牌。"
        "15 分钟内失败 5 次进入锁定，锁定期间直接返回 429 且不再计入失败次数。"
    ),
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MfaChallengeData],
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def challenge(
    payload: MfaChallengeRequest,
    request: Request,
    ctx: RequestContext = Depends(get_pending_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    result = runtime.mfa.challenge(ctx.user_id, code=payload.code, backup_code=payload.backup_code)
    token, _exp_ts, expires_at, _jti = issue_access_token(ctx.user, assurance=AuthAssurance.AAL2)
    return success(
        request,
        {
            "method": result.method,
            "backup_codes_remaining": result.backup_codes_remaining,
            "access_token": token,
            "token_type": "bearer",
            "expires_at": expires_at,
        },
    )


@router.get(
    "/lockout",
    summary="查询锁定状态",
    description="供二次验证页展示剩余尝试次数或锁定倒计时。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MfaLockoutData],
    responses={401: {"model": ErrorResponse}},
)
def get_lockout(
    request: Request,
    ctx: RequestContext = Depends(get_pending_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    lockout = runtime.mfa.lockout_status(ctx.user_id)
    return success(
        request,
        {
            "locked": lockout.locked,
            "locked_until": lockout.locked_until,
            "retry_after_seconds": lockout.retry_after_seconds,
            "failed_attempts": lockout.failed_attempts,
            "remaining_attempts": lockout.remaining_attempts,
        },
    )


@router.post(
    "/disable",
    summary="关闭两步验证",
    description="删除全部因子与备用码，不可恢复，需重新绑定。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MfaDisableData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def disable(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    removed = runtime.mfa.disable(ctx.user_id, audit=audit_context_from_request(request))
    return success(request, {"state": MfaState.UNENROLLED, "factors_removed": removed})


@router.post(
    "/reset",
    summary="重置两步验证",
    description="与关闭相同，删除全部因子与备用码后回到未开启状态。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MfaStatusData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def reset(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    result = runtime.mfa.reset(ctx.user_id, audit=audit_context_from_request(request))
    return success(
        request,
        {
            "state": result.state,
            "factor_id": result.factor_id,
            "backup_codes_remaining": result.backup_codes_remaining,
        },
    )
