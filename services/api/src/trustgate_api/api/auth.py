"""认证接口。"""

from datetime import datetime, timezone
import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from trustgate_api.core.config import get_settings
from trustgate_api.core.security import parse_authorization_header, revoke_token_jti
from trustgate_api.db.session import get_db
from trustgate_api.dependencies import (
    RequestContext,
    TrustRuntime,
    get_pending_context,
    get_trust_runtime,
    normalize_email,
)
from trustgate_api.models.auth import UserCredential
from trustgate_api.models.enums import AuthAssurance, MfaState, TrustTable, UserStatus
from trustgate_api.models.user import User, UserRole
from trustgate_api.schemas.auth import (
    AuthLoginRequest,
    AuthLogoutData,
    AuthMeData,
    AuthRegisterData,
    AuthRegisterRequest,
    AuthTokenData,
)
from trustgate_api.schemas.common import ErrorResponse, SuccessResponse
from trustgate_api.services.local_auth import hash_password, issue_access_token, verify_password
from trustgate_api.services.session_gate import SIGN_OUT_ACTION
from trustgate_api.services.trust_events import TrustChangeEvent
from trustgate_api.utils.response import success

logger = logging.getLogger("trustgate_api.auth")

router = APIRouter(prefix="/auth", tags=["auth"])
settings = get_settings()


def _invalid_credentials() -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid credentials")


@router.post(
    "/register",
    summary="注册本地账号",
    description="创建本地账号凭据（邮箱+密码），用于后续登录换取访问令牌。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[AuthRegisterData],
    responses={409: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def register(
    payload: AuthRegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """注册本地账号。"""
    email = normalize_email(payload.email)
    display_name = payload.display_name.strip() if payload.display_name else email.split("@")[0]

    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    now = datetime.now(timezone.utc)

    if not user:
        user = User(
            id=uuid4(),
            email=email,
            display_name=display_name,
            status=UserStatus.ACTIVE,
            auth_provider=settings.auth_local_issuer,
            external_subject=email,
            last_login_at=None,
        )
        db.add(user)
        db.flush()
    elif user.auth_provider != settings.auth_local_issuer:
        # 外部身份主体不允许通过本地注册补绑密码，避免账号接管。
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="account managed by external provider")

    credential = db.execute(select(UserCredential).where(UserCredential.user_id == user.id)).scalar_one_or_none()
    if credential and credential.status == "active":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="credential already exists")

    password_hash = hash_password(payload.password)
    if not credential:
        db.add(
            UserCredential(
                id=uuid4(),
                user_id=user.id,
                password_hash=password_hash,
                status="active",
                password_updated_at=now,
            )
        )
    else:
        credential.password_hash = password_hash
        credential.status = "active"
        credential.password_updated_at = now

    db.commit()
    return success(
        request,
        {
            "user_id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "auth_provider": user.auth_provider,
        },
    )


@router.post(
    "/login",
    summary="本地账号登录",
    description=(
        "使用邮箱密码登录，返回 Bearer 访问令牌。"
        "已开启两步验证的账号返回 mfa_required=true 与短时效的待验证令牌，"
        "需调用 /api/mfa/challenge 完成二次验证后才建立完整会话。"
    ),
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[AuthTokenData],
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def login(
    payload: AuthLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    """本地账号登录并签发访问令牌。"""
    email = normalize_email(payload.email)
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user or user.status != UserStatus.ACTIVE:
        raise _invalid_credentials()

    credential = (
        db.execute(
            select(UserCredential)
            .where(UserCredential.user_id == user.id)
            .where(UserCredential.status == "active")
        )
        .scalar_one_or_none()
    )
    if not credential or not verify_password(payload.password, credential.password_hash):
        raise _invalid_credentials()

    # 二次验证是建立会话的关口，而不是每次导航都检查。
    mfa_required = runtime.mfa.status(user.id).state == MfaState.VERIFIED
    assurance = AuthAssurance.AAL1 if mfa_required else None
    token, exp_ts, expires_at, _jti = issue_access_token(user, assurance=assurance)
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    logger.info("user login user_id=%s mfa_required=%s", user.id, mfa_required)

    return success(
        request,
        {
            "access_token": token,
            "token_type": "bearer",
            "expires_at": expires_at,
            "expires_in": max(0, exp_ts - int(datetime.now(timezone.utc).timestamp())),
            "mfa_required": mfa_required,
        },
    )


@router.post(
    "/logout",
    summary="登出",
    description="将当前访问令牌加入黑名单并结束该用户进行中的门禁判定流。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[AuthLogoutData],
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def logout(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    runtime: TrustRuntime = Depends(get_trust_runtime),
):
    """登出并拉黑当前访问令牌。"""
    principal = parse_authorization_header(authorization)
    jti = principal.claims.get("jti")
    exp = principal.claims.get("exp")
    revoked = False
    if isinstance(jti, str) and jti and isinstance(exp, int):
        revoke_token_jti(jti, exp)
        revoked = True

    if principal.user_id is not None:
        runtime.gate.forget(principal.user_id)
        runtime.event_bus.publish(
            TrustChangeEvent(table=TrustTable.SESSIONS, user_id=principal.user_id, action=SIGN_OUT_ACTION)
        )
    return success(request, {"logged_out": True, "revoked": revoked})


@router.get(
    "/me",
    summary="获取当前身份",
    description="返回当前用户资料、平台角色以及会话是否仍待二次验证。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[AuthMeData],
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def me(
    request: Request,
    ctx: RequestContext = Depends(get_pending_context),
    db: Session = Depends(get_db),
):
    roles = db.execute(select(UserRole.role).where(UserRole.user_id == ctx.user_id)).scalars().all()
    user = ctx.user
    data = {
        "user": {
            "id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "status": user.status,
            "auth_provider": user.auth_provider,
            "last_login_at": user.last_login_at,
        },
        "roles": sorted(roles),
        "mfa_pending": ctx.session.mfa_pending,
    }
    return success(request, data)
