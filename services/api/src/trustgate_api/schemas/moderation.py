"""社区管理请求与响应结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from trustgate_api.models.enums import AppRole, WarningSeverity
from trustgate_api.schemas.common import BaseSchema


class BanCreateRequest(BaseModel):
    user_id: UUID = Field(description="被封禁用户 ID。")
    reason: str | None = Field(default=None, max_length=1000, description="封禁原因，展示给被封禁用户。")
    expires_at: datetime | None = Field(default=None, description="到期时间，为空表示永久封禁。")


class BanData(BaseSchema):
    id: UUID
    user_id: UUID
    banned_by: UUID
    reason: str | None = None
    banned_at: datetime
    expires_at: datetime | None = None
    unbanned_at: datetime | None = None


class BanLiftData(BaseSchema):
    user_id: UUID = Field(description="用户 ID。")
    lifted: int = Field(description="解除的封禁记录数。")


class WarningCreateRequest(BaseModel):
    user_id: UUID = Field(description="被警告用户 ID。")
    reason: str = Field(min_length=1, max_length=1000, description="警告原因。")
    severity: WarningSeverity = Field(default=WarningSeverity.MEDIUM, description="严重程度。")


class WarningCreatedData(BaseSchema):
    id: UUID
    user_id: UUID
    warned_by: UUID | None = None
    reason: str
    severity: WarningSeverity
    created_at: datetime


class WarningCountData(BaseSchema):
    user_id: UUID
    warning_count: int


class RoleAssignRequest(BaseModel):
    role: AppRole = Field(description="要授予的平台角色：owner/admin/moderator/user。")


class RoleAssignData(BaseSchema):
    user_id: UUID = Field(description="用户 ID。")
    role: AppRole = Field(description="授予的角色。")
    assigned: bool = Field(description="本次是否写入；用户已持有该角色时为 false。")
