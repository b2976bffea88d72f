"""信任状态存储。

封禁、警告、验证因子、备用码与失败日志的唯一读写入口。
每个操作使用独立短会话；数据库异常统一转换为 StoreUnavailable，
写操作提交成功后向推送总线发布变更事件。
"""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import delete, false, func, select, true, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from trustgate_api.core.errors import EnrollmentConflict, StoreUnavailable
from trustgate_api.models.auth import FailedMfaAttempt, MfaBackupCode, MfaFactor
from trustgate_api.models.enums import MfaFactorType, TrustTable, WarningSeverity, WarningState
from trustgate_api.models.moderation import ModerationWarning, UserBan
from trustgate_api.models.user import User, UserRole
from trustgate_api.services.audit import AuditContext, audit_log
from trustgate_api.services.trust_events import TrustChangeEvent, TrustEventBus
from trustgate_api.utils.time import ensure_utc, utc_now

logger = logging.getLogger("trustgate_api.store")


@dataclass(frozen=True)
class BanRecord:
    id: UUID
    user_id: UUID
    banned_by: UUID
    reason: str | None
    banned_at: datetime
    expires_at: datetime | None
    unbanned_at: datetime | None


@dataclass(frozen=True)
class WarningRecord:
    id: UUID
    user_id: UUID
    warned_by: UUID | None
    reason: str
    severity: WarningSeverity
    created_at: datetime
    acknowledged_at: datetime | None

    @property
    def state(self) -> WarningState:
        return WarningState.PENDING if self.acknowledged_at is None else WarningState.ACKNOWLEDGED


@dataclass(frozen=True)
class FactorRecord:
    id: UUID
    user_id: UUID
    factor_type: str
    secret: str
    verified: bool
    friendly_name: str | None
    created_at: datetime


@dataclass(frozen=True)
class BackupCodeRecord:
    id: UUID
    user_id: UUID
    factor_id: UUID
    code_hash: str
    used_at: datetime | None


def _severity(value: str | None) -> WarningSeverity:
    try:
        return WarningSeverity((value or "").lower())
    except ValueError:
        return WarningSeverity.MEDIUM


def _ban_record(row: UserBan) -> BanRecord:
    return BanRecord(
        id=row.id,
        user_id=row.user_id,
        banned_by=row.banned_by,
        reason=row.reason,
        banned_at=ensure_utc(row.banned_at),
        expires_at=ensure_utc(row.expires_at),
        unbanned_at=ensure_utc(row.unbanned_at),
    )


def _warning_record(row: ModerationWarning) -> WarningRecord:
    return WarningRecord(
        id=row.id,
        user_id=row.user_id,
        warned_by=row.warned_by,
        reason=row.reason,
        severity=_severity(row.severity),
        created_at=ensure_utc(row.created_at),
        acknowledged_at=ensure_utc(row.acknowledged_at),
    )


def _factor_record(row: MfaFactor) -> FactorRecord:
    return FactorRecord(
        id=row.id,
        user_id=row.user_id,
        factor_type=row.factor_type,
        secret=row.secret,
        verified=bool(row.verified),
        friendly_name=row.friendly_name,
        created_at=ensure_utc(row.created_at),
    )


def _backup_code_record(row: MfaBackupCode) -> BackupCodeRecord:
    return BackupCodeRecord(
        id=row.id,
        user_id=row.user_id,
        factor_id=row.factor_id,
        code_hash=row.code_hash,
        used_at=ensure_utc(row.used_at),
    )


class TrustStateStore:
    """基于 SQLAlchemy 的信任状态存储。"""

    def __init__(self, session_factory: sessionmaker, event_bus: TrustEventBus | None = None) -> None:
        self._session_factory = session_factory
        self._event_bus = event_bus

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db: Session = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            # 仅记录异常类型，避免存储细节进入日志与响应。
            logger.error("trust store operation failed error=%s", exc.__class__.__name__)
            raise StoreUnavailable() from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _publish(self, table: str, user_id: UUID, action: str, record_id: UUID | None = None) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(TrustChangeEvent(table=table, user_id=user_id, action=action, record_id=record_id))

    # -- bans ----------------------------------------------------------------

    def latest_active_ban(self, user_id: UUID) -> BanRecord | None:
        """返回最近一条未解封的封禁（不判断是否过期）。"""
        with self._session() as db:
            row = (
                db.execute(
                    select(UserBan)
                    .where(UserBan.user_id == user_id)
                    .where(UserBan.unbanned_at.is_(None))
                    .order_by(UserBan.banned_at.desc())
                    .limit(1)
                )
                .scalars()
                .first()
            )
            return _ban_record(row) if row else None

    def create_ban(
        self,
        *,
        user_id: UUID,
        banned_by: UUID,
        reason: str | None,
        expires_at: datetime | None,
        now: datetime | None = None,
        audit: AuditContext | None = None,
    ) -> BanRecord:
        now = now or utc_now()
        with self._session() as db:
            row = UserBan(
                id=uuid4(),
                user_id=user_id,
                banned_by=banned_by,
                reason=reason,
                banned_at=now,
                expires_at=expires_at,
            )
            db.add(row)
            db.flush()
            audit_log(
                db,
                audit,
                actor_user_id=banned_by,
                action="ban.create",
                resource_type="user",
                resource_id=str(user_id),
                after_json={
                    "ban_id": str(row.id),
                    "reason": reason,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
            )
            record = _ban_record(row)
        self._publish(TrustTable.BANS, user_id, "insert", record.id)
        return record

    def lift_ban(
        self,
        *,
        user_id: UUID,
        lifted_by: UUID,
        now: datetime | None = None,
        audit: AuditContext | None = None,
    ) -> int:
        """软解封：给所有未解封记录写入解封时间，返回影响条数。"""
        now = now or utc_now()
        with self._session() as db:
            result = db.execute(
                update(UserBan)
                .where(UserBan.user_id == user_id)
                .where(UserBan.unbanned_at.is_(None))
                .values(unbanned_at=now, unbanned_by=lifted_by)
            )
            lifted = result.rowcount or 0
            if lifted:
                audit_log(
                    db,
                    audit,
                    actor_user_id=lifted_by,
                    action="ban.lift",
                    resource_type="user",
                    resource_id=str(user_id),
                    after_json={"lifted": lifted},
                )
        if lifted:
            self._publish(TrustTable.BANS, user_id, "update")
        return lifted

    def list_bans(self, *, limit: int = 100) -> list[BanRecord]:
        with self._session() as db:
            rows = db.execute(select(UserBan).order_by(UserBan.banned_at.desc()).limit(limit)).scalars().all()
            return [_ban_record(row) for row in rows]

    # -- warnings ------------------------------------------------------------

    def list_unacknowledged_warnings(self, user_id: UUID) -> list[WarningRecord]:
        """未确认警告，按创建时间倒序。"""
        with self._session() as db:
            rows = (
                db.execute(
                    select(ModerationWarning)
                    .where(ModerationWarning.user_id == user_id)
                    .where(ModerationWarning.acknowledged_at.is_(None))
                    .order_by(ModerationWarning.created_at.desc())
                )
                .scalars()
                .all()
            )
            return [_warning_record(row) for row in rows]

    def get_warning(self, warning_id: UUID) -> WarningRecord | None:
        with self._session() as db:
            row = db.get(ModerationWarning, warning_id)
            return _warning_record(row) if row else None

    def acknowledge_warning(self, *, user_id: UUID, warning_id: UUID, now: datetime | None = None) -> bool:
        """条件更新单条警告；已确认、不存在或不属于该用户时返回 False。"""
        now = now or utc_now()
        with self._session() as db:
            result = db.execute(
                update(ModerationWarning)
                .where(ModerationWarning.id == warning_id)
                .where(ModerationWarning.user_id == user_id)
                .where(ModerationWarning.acknowledged_at.is_(None))
                .values(acknowledged_at=now)
            )
            changed = (result.rowcount or 0) == 1
        if changed:
            self._publish(TrustTable.WARNINGS, user_id, "update", warning_id)
        return changed

    def create_warning(
        self,
        *,
        user_id: UUID,
        warned_by: UUID | None,
        reason: str,
        severity: WarningSeverity,
        now: datetime | None = None,
        audit: AuditContext | None = None,
    ) -> WarningRecord:
        now = now or utc_now()
        with self._session() as db:
            row = ModerationWarning(
                id=uuid4(),
                user_id=user_id,
                warned_by=warned_by,
                reason=reason,
                severity=severity,
                created_at=now,
            )
            db.add(row)
            db.flush()
            audit_log(
                db,
                audit,
                actor_user_id=warned_by,
                action="warning.create",
                resource_type="user",
                resource_id=str(user_id),
                after_json={"warning_id": str(row.id), "severity": str(severity), "reason": reason},
            )
            record = _warning_record(row)
        self._publish(TrustTable.WARNINGS, user_id, "insert", record.id)
        return record

    def count_warnings(self, user_id: UUID) -> int:
        with self._session() as db:
            return int(
                db.execute(
                    select(func.count()).select_from(ModerationWarning).where(ModerationWarning.user_id == user_id)
                ).scalar_one()
            )

    # -- mfa factors ---------------------------------------------------------

    def list_factors(self, user_id: UUID) -> list[FactorRecord]:
        """全部因子，按创建时间倒序。"""
        with self._session() as db:
            rows = (
                db.execute(
                    select(MfaFactor).where(MfaFactor.user_id == user_id).order_by(MfaFactor.created_at.desc())
                )
                .scalars()
                .all()
            )
            return [_factor_record(row) for row in rows]

    def create_factor(
        self,
        *,
        user_id: UUID,
        secret: str,
        friendly_name: str,
        backup_code_hashes: Iterable[str] = (),
        now: datetime | None = None,
    ) -> FactorRecord:
        """新建未验证因子，并绑定待生效的备用码哈希。"""
        now = now or utc_now()
        with self._session() as db:
            row = MfaFactor(
                id=uuid4(),
                user_id=user_id,
                factor_type=MfaFactorType.TOTP,
                secret=secret,
                verified=False,
                friendly_name=friendly_name,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            try:
                db.flush()
            except IntegrityError as exc:
                raise EnrollmentConflict() from exc
            for code_hash in backup_code_hashes:
                db.add(
                    MfaBackupCode(
                        id=uuid4(),
                        user_id=user_id,
                        factor_id=row.id,
                        code_hash=code_hash,
                        created_at=now,
                    )
                )
            record = _factor_record(row)
        self._publish(TrustTable.MFA_FACTORS, user_id, "insert", record.id)
        return record

    def delete_unverified_factors(self, user_id: UUID) -> int:
        """删除未验证因子及其待生效备用码。"""
        with self._session() as db:
            factor_ids = (
                db.execute(
                    select(MfaFactor.id).where(MfaFactor.user_id == user_id).where(MfaFactor.verified == false())
                )
                .scalars()
                .all()
            )
            if not factor_ids:
                return 0
            db.execute(delete(MfaBackupCode).where(MfaBackupCode.factor_id.in_(factor_ids)))
            db.execute(delete(MfaFactor).where(MfaFactor.id.in_(factor_ids)))
        self._publish(TrustTable.MFA_FACTORS, user_id, "delete")
        return len(factor_ids)

    def verify_factor(self, *, factor_id: UUID, user_id: UUID, now: datetime | None = None) -> bool:
        """将未验证因子标记为已验证，其备用码随之生效。"""
        now = now or utc_now()
        with self._session() as db:
            result = db.execute(
                update(MfaFactor)
                .where(MfaFactor.id == factor_id)
                .where(MfaFactor.user_id == user_id)
                .where(MfaFactor.verified == false())
                .values(verified=True, verified_at=now, updated_at=now)
            )
            changed = (result.rowcount or 0) == 1
        if changed:
            self._publish(TrustTable.MFA_FACTORS, user_id, "update", factor_id)
        return changed

    def delete_all_mfa(self, *, user_id: UUID, audit: AuditContext | None = None) -> int:
        """删除用户全部因子与备用码，返回删除的因子数。"""
        with self._session() as db:
            db.execute(delete(MfaBackupCode).where(MfaBackupCode.user_id == user_id))
            result = db.execute(delete(MfaFactor).where(MfaFactor.user_id == user_id))
            removed = result.rowcount or 0
            audit_log(
                db,
                audit,
                actor_user_id=user_id,
                action="mfa.disable",
                resource_type="user",
                resource_id=str(user_id),
                after_json={"factors_removed": removed},
            )
        self._publish(TrustTable.MFA_FACTORS, user_id, "delete")
        return removed

    # -- backup codes --------------------------------------------------------

    def list_unused_backup_codes(self, user_id: UUID) -> list[BackupCodeRecord]:
        """仅返回已验证因子下未使用的备用码。"""
        with self._session() as db:
            rows = (
                db.execute(
                    select(MfaBackupCode)
                    .join(MfaFactor, MfaFactor.id == MfaBackupCode.factor_id)
                    .where(MfaBackupCode.user_id == user_id)
                    .where(MfaBackupCode.used_at.is_(None))
                    .where(MfaFactor.verified == true())
                )
                .scalars()
                .all()
            )
            return [_backup_code_record(row) for row in rows]

    def count_unused_backup_codes(self, user_id: UUID) -> int:
        return len(self.list_unused_backup_codes(user_id))

    def consume_backup_code(self, *, code_id: UUID, user_id: UUID, now: datetime | None = None) -> bool:
        """条件更新 used_at，保证同一备用码只被兑换一次。"""
        now = now or utc_now()
        with self._session() as db:
            result = db.execute(
                update(MfaBackupCode)
                .where(MfaBackupCode.id == code_id)
                .where(MfaBackupCode.user_id == user_id)
                .where(MfaBackupCode.used_at.is_(None))
                .values(used_at=now)
            )
            consumed = (result.rowcount or 0) == 1
        if consumed:
            self._publish(TrustTable.BACKUP_CODES, user_id, "update", code_id)
        return consumed

    def get_backup_code(self, code_id: UUID) -> BackupCodeRecord | None:
        with self._session() as db:
            row = db.get(MfaBackupCode, code_id)
            return _backup_code_record(row) if row else None

    # -- failed attempts -----------------------------------------------------

    def record_failed_attempt(self, *, user_id: UUID, now: datetime | None = None) -> None:
        now = now or utc_now()
        with self._session() as db:
            db.add(FailedMfaAttempt(id=uuid4(), user_id=user_id, attempted_at=now))
        self._publish(TrustTable.FAILED_ATTEMPTS, user_id, "insert")

    def list_failed_attempts_since(self, *, user_id: UUID, since: datetime) -> list[datetime]:
        """窗口内失败时间，按时间倒序。"""
        with self._session() as db:
            rows = (
                db.execute(
                    select(FailedMfaAttempt.attempted_at)
                    .where(FailedMfaAttempt.user_id == user_id)
                    .where(FailedMfaAttempt.attempted_at >= since)
                    .order_by(FailedMfaAttempt.attempted_at.desc())
                )
                .scalars()
                .all()
            )
            return [ensure_utc(value) for value in rows]

    def count_failed_attempts(self, user_id: UUID) -> int:
        with self._session() as db:
            return int(
                db.execute(
                    select(func.count()).select_from(FailedMfaAttempt).where(FailedMfaAttempt.user_id == user_id)
                ).scalar_one()
            )

    # -- roles ---------------------------------------------------------------

    def has_any_role(self, user_id: UUID, roles: Iterable[str]) -> bool:
        role_values = [str(role) for role in roles]
        if not role_values:
            return False
        with self._session() as db:
            row = (
                db.execute(select(UserRole.id).where(UserRole.user_id == user_id).where(UserRole.role.in_(role_values)))
                .scalars()
                .first()
            )
            return row is not None

    def assign_role(
        self,
        *,
        user_id: UUID,
        role: str,
        granted_by: UUID | None,
        now: datetime | None = None,
        audit: AuditContext | None = None,
    ) -> bool:
        """授予平台角色；已持有时不做任何写入并返回 False。"""
        now = now or utc_now()
        with self._session() as db:
            existing = (
                db.execute(select(UserRole.id).where(UserRole.user_id == user_id).where(UserRole.role == str(role)))
                .scalars()
                .first()
            )
            if existing is not None:
                return False
            db.add(UserRole(id=uuid4(), user_id=user_id, role=str(role), created_by=granted_by, created_at=now))
            try:
                db.flush()
            except IntegrityError:
                # 并发授予同一角色，以先写入者为准。
                db.rollback()
                return False
            audit_log(
                db,
                audit,
                actor_user_id=granted_by,
                action="role.assign",
                resource_type="user",
                resource_id=str(user_id),
                after_json={"role": str(role)},
            )
        return True

    def user_exists(self, user_id: UUID) -> bool:
        with self._session() as db:
            return db.execute(select(User.id).where(User.id == user_id)).scalars().first() is not None
