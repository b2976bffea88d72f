"""两步验证请求与响应结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from trustgate_api.models.enums import ChallengeMethod, MfaState
from trustgate_api.schemas.common import BaseSchema


class MfaStatusData(BaseSchema):
    state: MfaState = Field(description="两步验证状态。")
    factor_id: UUID | None = Field(default=None, description="当前因子 ID。")
    backup_codes_remaining: int = Field(default=0, description="剩余可用备用码数量。")


class MfaEnrollData(BaseSchema):
    """绑定信息；密钥与备用码仅返回这一次。"""

    factor_id: UUID = Field(description="未验证因子 ID。")
    secret: str = Field(description="共享密钥（Base32）。")
    otpauth_uri: str = Field(description="供二维码渲染的 otpauth 地址。")
    backup_codes: list[str] = Field(description="一次性备用码明文，请提示用户妥善保存。")


class MfaCodeRequest(BaseModel):
    """绑定确认请求。"""

    code: str = Field(min_length=6, max_length=16, description="身份验证器中的 6 位动态口令。", examples=["123456"])


class MfaChallengeRequest(BaseModel):
    """登录二次验证请求，动态口令与备用码二选一。"""

    code: str | None = Field(default=None, min_length=6, max_length=16, description="6 位动态口令。")
    backup_code: str | None = Field(default=None, min_length=8, max_length=16, description="8 位备用码。")

    @model_validator(mode="after")
    def exactly_one(self):
        if (self.code is None) == (self.backup_code is None):
            raise ValueError("exactly one of code or backup_code is required")
        return self


class MfaChallengeData(BaseSchema):
    method: ChallengeMethod = Field(description="通过方式。")
    backup_codes_remaining: int = Field(description="剩余可用备用码数量。")
    access_token: str = Field(description="完整会话访问令牌。")
    token_type: str = Field(default="bearer", description="令牌类型。")
    expires_at: datetime = Field(description="令牌过期时间（UTC）。")


class MfaConfirmData(MfaStatusData):
    access_token: str = Field(description="已完成二次验证的访问令牌。")
    expires_at: datetime = Field(description="令牌过期时间（UTC）。")


class MfaLockoutData(BaseSchema):
    locked: bool = Field(description="是否处于锁定中。")
    locked_until: datetime | None = Field(default=None, description="锁定结束时间。")
    retry_after_seconds: int = Field(description="距锁定结束剩余秒数。")
    failed_attempts: int = Field(description="窗口内失败次数。")
    remaining_attempts: int = Field(description="触发锁定前剩余可尝试次数。")


class MfaDisableData(BaseSchema):
    state: MfaState = Field(description="操作后的状态。")
    factors_removed: int = Field(description="删除的因子数量。")
