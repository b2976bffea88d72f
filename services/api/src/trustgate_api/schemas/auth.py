"""登录与登出请求结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from trustgate_api.schemas.common import BaseSchema

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class AuthRegisterRequest(BaseModel):
    """本地账号注册请求。"""

    email: str = Field(
        min_length=5,
        max_length=256,
        pattern=EMAIL_PATTERN,
        description="登录邮箱。",
        examples=["alice@example.com"],
    )
    password: str = Field(min_length=8, max_length=128, description="登录密码。", examples=["StrongPassw0rd!"])
    display_name: str | None = Field(default=None, min_length=1, max_length=128, description="展示名。")


class AuthLoginRequest(BaseModel):
    """本地账号登录请求。"""

    email: str = Field(
        min_length=5,
        max_length=256,
        pattern=EMAIL_PATTERN,
        description="登录邮箱。",
        examples=["alice@example.com"],
    )
    password: str = Field(min_length=8, max_length=128, description="登录密码。", examples=["StrongPassw0rd!"])


class AuthRegisterData(BaseSchema):
    """注册结果结构。"""

    user_id: UUID = Field(description="用户 ID。")
    email: str = Field(description="登录邮箱。")
    display_name: str = Field(description="展示名。")
    auth_provider: str = Field(description="认证来源。")


class AuthTokenData(BaseSchema):
    """登录或二次验证后签发的令牌。"""

    access_token: str = Field(description="访问令牌。")
    token_type: str = Field(default="bearer", description="令牌类型。")
    expires_at: datetime = Field(description="令牌过期时间（UTC）。")
    expires_in: int = Field(description="距过期剩余秒数。")
    mfa_required: bool = Field(
        default=False,
        description="为 true 时该令牌仅可用于二次验证，需调用 /api/mfa/challenge 换取完整会话令牌。",
    )


class AuthLogoutData(BaseSchema):
    """登出结果结构。"""

    logged_out: bool = Field(description="是否已完成登出。")
    revoked: bool = Field(description="当前 token 是否已加入黑名单。")


class AuthUserData(BaseSchema):
    id: UUID
    email: str
    display_name: str
    status: str
    auth_provider: str
    last_login_at: datetime | None = None


class AuthMeData(BaseSchema):
    """当前身份视图。"""

    user: AuthUserData = Field(description="当前用户资料。")
    roles: list[str] = Field(default_factory=list, description="平台角色列表。")
    mfa_pending: bool = Field(description="当前会话是否仍待二次验证。")
