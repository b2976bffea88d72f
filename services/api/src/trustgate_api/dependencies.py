"""请求上下文依赖。

职责:
1. 解析并校验访问令牌。
2. 将认证主体映射为本地 User 与门禁使用的 TrustSession。
3. 拦截仍待二次验证的会话访问普通接口。
4. 提供进程内共享的信任运行时（存储、门禁、两步验证、管理服务）。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
from uuid import uuid4

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from trustgate_api.core.config import Settings, get_settings
from trustgate_api.core.security import AuthenticatedPrincipal, parse_authorization_header, UNAUTHORIZED
from trustgate_api.db.session import get_db
from trustgate_api.models.enums import UserStatus
from trustgate_api.models.user import User
from trustgate_api.services.mfa import MfaService
from trustgate_api.services.moderation import ModerationService
from trustgate_api.services.session_gate import SessionGate, TrustSession, build_session_gate
from trustgate_api.services.trust_events import TrustEventBus, get_event_bus
from trustgate_api.services.trust_store import TrustStateStore

bearer_scheme = HTTPBearer(auto_error=False)

MFA_REQUIRED = HTTPException(
    status_code=status.HTTP_403_FORBIDDEN,
    detail={"code": "MFA_REQUIRED", "message": "请先完成两步验证。"},
)


@dataclass
class TrustRuntime:
    """进程内共享的信任组件。

    门禁评估器持有上次结果缓存，需跨请求复用同一实例。
    """

    store: TrustStateStore
    gate: SessionGate
    mfa: MfaService
    moderation: ModerationService
    event_bus: TrustEventBus


def build_trust_runtime(
    session_factory: sessionmaker,
    event_bus: TrustEventBus | None = None,
    settings: Settings | None = None,
) -> TrustRuntime:
    settings = settings or get_settings()
    event_bus = event_bus or get_event_bus()
    store = TrustStateStore(session_factory, event_bus)
    return TrustRuntime(
        store=store,
        gate=build_session_gate(store, event_bus, settings),
        mfa=MfaService(store, settings),
        moderation=ModerationService(store),
        event_bus=event_bus,
    )


def get_trust_runtime(request: Request) -> TrustRuntime:
    return request.app.state.trust_runtime


def get_trust_store(runtime: TrustRuntime = Depends(get_trust_runtime)) -> TrustStateStore:
    return runtime.store


@dataclass
class RequestContext:
    """请求上下文。"""

    # 当前请求用户。
    user: User
    # 门禁视图。
    session: TrustSession
    # 认证主体原始信息（来自 JWT）。
    principal: AuthenticatedPrincipal

    @property
    def user_id(self):
        return self.user.id


def _build_display_name(principal: AuthenticatedPrincipal) -> str:
    """构造用户展示名。"""
    if principal.display_name:
        candidate = principal.display_name.strip()
    elif principal.email:
        candidate = principal.email.split("@")[0]
    else:
        candidate = f"user-{principal.subject[:8]}"
    return candidate[:128] or "user"


def _normalize_external_subject(subject: str) -> str:
    """标准化 external_subject，防止写库超长。"""
    normalized = subject.strip() or "anonymous"
    if len(normalized) <= 256:
        return normalized
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return f"hash:{digest}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_user(db: Session, principal: AuthenticatedPrincipal) -> User:
    """确保认证主体在本地存在对应用户记录。"""
    if principal.user_id is not None:
        # 本地签发的令牌直接携带用户 ID。
        user = db.get(User, principal.user_id)
        if user is not None:
            return user

    normalized_subject = _normalize_external_subject(principal.subject)
    stmt = select(User).where(User.auth_provider == principal.provider).where(
        User.external_subject == normalized_subject
    )
    user = db.execute(stmt).scalar_one_or_none()
    if user:
        return user

    # 外部身份首次访问：创建本地用户。
    email = normalize_email(principal.email) if principal.email else f"{normalized_subject[:192]}@external.local"
    user = User(
        id=uuid4(),
        email=email,
        display_name=_build_display_name(principal),
        status=UserStatus.ACTIVE,
        auth_provider=principal.provider,
        external_subject=normalized_subject,
        last_login_at=datetime.now(timezone.utc),
    )
    db.add(user)
    db.flush()
    return user


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedPrincipal:
    """提取并解析当前请求认证主体。"""
    authorization = None
    if credentials is not None and credentials.credentials:
        authorization = f"{credentials.scheme} {credentials.credentials}"
    return parse_authorization_header(authorization)


def _session_for(principal: AuthenticatedPrincipal, db: Session) -> RequestContext:
    user = ensure_user(db, principal)
    if user.status != UserStatus.ACTIVE:
        db.rollback()
        raise UNAUTHORIZED
    db.commit()
    session = TrustSession(user_id=user.id, email=user.email, mfa_pending=principal.mfa_pending)
    return RequestContext(user=user, session=session, principal=principal)


def get_pending_context(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> RequestContext:
    """允许待二次验证会话，仅供二次验证与门禁判定接口使用。"""
    return _session_for(principal, db)


def get_request_context(ctx: RequestContext = Depends(get_pending_context)) -> RequestContext:
    """完整会话：待二次验证的令牌在此被拒绝。"""
    if ctx.session.mfa_pending:
        raise MFA_REQUIRED
    return ctx


def get_optional_trust_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> TrustSession | None:
    """未携带令牌时返回 None（视为未登录）；携带但非法时仍返回 401。"""
    if credentials is None or not credentials.credentials:
        return None
    principal = parse_authorization_header(f"{credentials.scheme} {credentials.credentials}")
    return _session_for(principal, db).session


def require_moderator(
    ctx: RequestContext = Depends(get_request_context),
    runtime: TrustRuntime = Depends(get_trust_runtime),
) -> RequestContext:
    """仅 owner/admin/moderator 可执行管理操作。"""
    runtime.moderation.ensure_moderator(ctx.user_id)
    return ctx
