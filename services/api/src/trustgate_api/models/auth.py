"""认证与两步验证相关模型。"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from trustgate_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from trustgate_api.models.enums import MfaFactorType


class UserCredential(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """用户本地凭据（邮箱密码）关系。"""

    __tablename__ = "user_credentials"
    __table_args__ = (UniqueConstraint("user_id", name="uk_user_credential_user"),)

    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    # 口令哈希，不存明文。
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    password_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MfaFactor(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """两步验证因子。

    同一用户下因子名称唯一；重新绑定时会短暂存在多个未验证因子，
    但参与登录校验的已验证因子至多一个。
    """

    __tablename__ = "mfa_factors"
    __table_args__ = (UniqueConstraint("user_id", "friendly_name", name="uk_mfa_factor_name"),)

    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    factor_type: Mapped[str] = mapped_column(String(16), nullable=False, default=MfaFactorType.TOTP)
    # 共享密钥，仅在绑定时返回一次。
    secret: Mapped[str] = mapped_column(String(128), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    friendly_name: Mapped[str | None] = mapped_column(String(64))
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class MfaBackupCode(Base, UUIDPrimaryKeyMixin):
    """一次性备用码，仅保存加盐哈希。"""

    __tablename__ = "mfa_backup_codes"

    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    # 归属的验证因子，因子验证通过前备用码不可用。
    factor_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    code_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # 首次兑换时写入，之后不再变更。
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class FailedMfaAttempt(Base, UUIDPrimaryKeyMixin):
    """二次验证失败日志，只追加。"""

    __tablename__ = "failed_mfa_attempts"
    __table_args__ = (Index("ix_failed_mfa_attempts_user_time", "user_id", "attempted_at"),)

    user_id: Mapped[UUID] = mapped_column(nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
