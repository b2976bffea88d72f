"""社区管理：封禁、解封与警告。"""

import logging
from datetime import datetime
from uuid import UUID

from trustgate_api.core.errors import BanNotFound, InvalidModerationRequest, ModerationForbidden, UserNotFound
from trustgate_api.models.enums import AppRole, WarningSeverity
from trustgate_api.services.audit import AuditContext
from trustgate_api.services.trust_store import BanRecord, TrustStateStore, WarningRecord
from trustgate_api.utils.time import ensure_utc, utc_now

logger = logging.getLogger("trustgate_api.moderation")

MODERATOR_ROLES = (AppRole.OWNER, AppRole.ADMIN, AppRole.MODERATOR)
ROLE_GRANTER_ROLES = (AppRole.OWNER, AppRole.ADMIN)


class ModerationService:
    """管理动作统一校验角色并写审计。"""

    def __init__(self, store: TrustStateStore) -> None:
        self._store = store

    def is_moderator(self, user_id: UUID) -> bool:
        return self._store.has_any_role(user_id, MODERATOR_ROLES)

    def ensure_moderator(self, actor_id: UUID) -> None:
        if not self.is_moderator(actor_id):
            raise ModerationForbidden()

    def ban_user(
        self,
        *,
        actor_id: UUID,
        user_id: UUID,
        reason: str | None,
        expires_at: datetime | None = None,
        now: datetime | None = None,
        audit: AuditContext | None = None,
    ) -> BanRecord:
        """封禁用户；expires_at 为空表示永久封禁。"""
        self._ensure_can_target(actor_id, user_id)
        now = now or utc_now()
        expires_at = ensure_utc(expires_at)
        if expires_at is not None and expires_at <= now:
            raise InvalidModerationRequest("封禁到期时间必须晚于当前时间。")
        record = self._store.create_ban(
            user_id=user_id,
            banned_by=actor_id,
            reason=reason,
            expires_at=expires_at,
            now=now,
            audit=audit,
        )
        logger.warning("user banned user_id=%s by=%s permanent=%s", user_id, actor_id, expires_at is None)
        return record

    def lift_ban(
        self,
        *,
        actor_id: UUID,
        user_id: UUID,
        now: datetime | None = None,
        audit: AuditContext | None = None,
    ) -> int:
        """软解封：保留历史记录，仅写入解封时间。"""
        self.ensure_moderator(actor_id)
        lifted = self._store.lift_ban(user_id=user_id, lifted_by=actor_id, now=now, audit=audit)
        if not lifted:
            raise BanNotFound()
        logger.info("user unbanned user_id=%s by=%s", user_id, actor_id)
        return lifted

    def warn_user(
        self,
        *,
        actor_id: UUID,
        user_id: UUID,
        reason: str,
        severity: WarningSeverity = WarningSeverity.MEDIUM,
        now: datetime | None = None,
        audit: AuditContext | None = None,
    ) -> WarningRecord:
        self._ensure_can_target(actor_id, user_id)
        record = self._store.create_warning(
            user_id=user_id,
            warned_by=actor_id,
            reason=reason,
            severity=severity,
            now=now,
            audit=audit,
        )
        logger.info("user warned user_id=%s by=%s severity=%s", user_id, actor_id, severity)
        return record

    def warning_count(self, *, actor_id: UUID, user_id: UUID) -> int:
        self.ensure_moderator(actor_id)
        return self._store.count_warnings(user_id)

    def list_bans(self, *, actor_id: UUID, limit: int = 100) -> list[BanRecord]:
        self.ensure_moderator(actor_id)
        return self._store.list_bans(limit=limit)

    def assign_role(
        self,
        *,
        actor_id: UUID,
        user_id: UUID,
        role: AppRole,
        now: datetime | None = None,
        audit: AuditContext | None = None,
    ) -> bool:
        """授予平台角色，仅 owner/admin 可操作，owner 角色只能由 owner 授予。

        用户已持有该角色时不做写入，返回 False。
        """
        if not self._store.has_any_role(actor_id, ROLE_GRANTER_ROLES):
            raise ModerationForbidden()
        if actor_id == user_id:
            raise ModerationForbidden("不能对自己执行管理操作。")
        if role == AppRole.OWNER and not self._store.has_any_role(actor_id, (AppRole.OWNER,)):
            raise ModerationForbidden("只有平台所有者可以授予所有者角色。")
        if not self._store.user_exists(user_id):
            raise UserNotFound()
        assigned = self._store.assign_role(user_id=user_id, role=role, granted_by=actor_id, now=now, audit=audit)
        if assigned:
            logger.warning("role assigned user_id=%s role=%s by=%s", user_id, role, actor_id)
        else:
            logger.info("role assign no-op user_id=%s role=%s", user_id, role)
        return assigned

    def _ensure_can_target(self, actor_id: UUID, user_id: UUID) -> None:
        self.ensure_moderator(actor_id)
        if actor_id == user_id:
            raise ModerationForbidden("不能对自己执行管理操作。")
