"""用户与角色模型。"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from trustgate_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from trustgate_api.models.enums import AppRole, UserStatus


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """平台本地账号。"""

    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("auth_provider", "external_subject", name="uk_user_external_identity"),)

    # 登录与通知主邮箱，系统内全局唯一。
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=UserStatus.ACTIVE)
    # 认证提供方标识（如 local）。
    auth_provider: Mapped[str] = mapped_column(String(64), nullable=False, default="local")
    # 外部身份系统中的主体 ID（sub）。
    external_subject: Mapped[str] = mapped_column(String(256), nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class UserRole(Base, UUIDPrimaryKeyMixin):
    """用户平台角色，一个用户可持有多个角色。"""

    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uk_user_role"),)

    # 用户 ID（逻辑关联 users.id，不声明数据库外键）。
    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=AppRole.USER)
    # 授予人，系统初始化时为空。
    created_by: Mapped[UUID | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
