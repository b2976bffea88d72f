"""封禁与警告模型。"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from trustgate_api.models.base import Base, UUIDPrimaryKeyMixin
from trustgate_api.models.enums import WarningSeverity


class UserBan(Base, UUIDPrimaryKeyMixin):
    """封禁记录。

    unbanned_at 为空且未过期（expires_at 为空表示永久）时视为生效。
    """

    __tablename__ = "banned_users"
    __table_args__ = (Index("ix_banned_users_user_banned_at", "user_id", "banned_at"),)

    user_id: Mapped[UUID] = mapped_column(nullable=False)
    banned_by: Mapped[UUID] = mapped_column(nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    banned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # 人工解封时间，写入后不再生效。
    unbanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unbanned_by: Mapped[UUID | None] = mapped_column()


class ModerationWarning(Base, UUIDPrimaryKeyMixin):
    """社区警告，用户确认前限制访问。"""

    __tablename__ = "user_warnings"
    __table_args__ = (Index("ix_user_warnings_user_created_at", "user_id", "created_at"),)

    user_id: Mapped[UUID] = mapped_column(nullable=False)
    warned_by: Mapped[UUID | None] = mapped_column()
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default=WarningSeverity.MEDIUM)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # 用户确认时间，单向写入。
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
