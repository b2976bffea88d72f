"""审计服务。"""

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from fastapi import Request
from sqlalchemy.orm import Session

from trustgate_api.models.audit import AuditLog


@dataclass(frozen=True)
class AuditContext:
    """审计所需的请求来源信息。"""

    ip: str | None = None
    user_agent: str | None = None


def _client_ip(request: Request) -> str | None:
    """从代理头或连接信息中提取客户端 IP。"""
    # 优先读取反向代理透传头，兼容网关/负载均衡场景。
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def audit_context_from_request(request: Request) -> AuditContext:
    return AuditContext(ip=_client_ip(request), user_agent=request.headers.get("user-agent"))


def audit_log(
    db: Session,
    context: AuditContext | None,
    actor_user_id: UUID | None,
    action: str,
    resource_type: str,
    resource_id: str,
    before_json: dict[str, Any] | None = None,
    after_json: dict[str, Any] | None = None,
) -> None:
    """写入统一审计日志，随调用方事务一起提交。"""
    context = context or AuditContext()
    db.add(
        AuditLog(
            actor_user_id=actor_user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            before_json=before_json,
            after_json=after_json,
            ip=context.ip,
            user_agent=context.user_agent,
        )
    )
