"""门禁判定、封禁与警告查询结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from trustgate_api.models.enums import DecisionKind, WarningSeverity, WarningState
from trustgate_api.schemas.common import BaseSchema


class WarningData(BaseSchema):
    """单条警告。"""

    id: UUID = Field(description="警告 ID。")
    reason: str = Field(description="警告原因。")
    severity: WarningSeverity = Field(description="严重程度：low < medium < high < critical。")
    state: WarningState = Field(description="确认状态。")
    created_at: datetime = Field(description="创建时间。")
    acknowledged_at: datetime | None = Field(default=None, description="确认时间。")


class SessionDecisionData(BaseSchema):
    """门禁判定结果。"""

    kind: DecisionKind = Field(description="判定类型。")
    allowed: bool = Field(description="是否允许继续访问当前路由。")
    redirect_to: str | None = Field(default=None, description="需要跳转的路由，为空表示停留当前路由。")
    reason: str | None = Field(default=None, description="封禁原因。")
    expires_at: datetime | None = Field(default=None, description="封禁到期时间，为空表示永久。")
    warning: WarningData | None = Field(default=None, description="当前需确认的警告。")
    degraded: bool = Field(default=False, description="是否处于降级判定（信任存储暂不可用）。")


class BanStatusData(BaseSchema):
    is_banned: bool = Field(description="是否处于封禁中。")
    reason: str | None = Field(default=None, description="封禁原因。")
    expires_at: datetime | None = Field(default=None, description="到期时间，为空表示永久。")
    degraded: bool = Field(default=False, description="是否为降级结果。")


class WarningListData(BaseSchema):
    """未确认警告列表（按创建时间倒序，逐条展示）。"""

    has_unacknowledged: bool = Field(description="是否存在未确认警告。")
    current: WarningData | None = Field(default=None, description="当前应展示的警告。")
    warnings: list[WarningData] = Field(default_factory=list, description="全部未确认警告。")
    degraded: bool = Field(default=False, description="是否为降级结果。")


class WarningAcknowledgeData(BaseSchema):
    warning_id: UUID = Field(description="警告 ID。")
    acknowledged: bool = Field(description="本次是否写入确认；已确认或不存在时为 false。")
    has_unacknowledged: bool = Field(description="确认后是否仍有未确认警告。")


class DecisionStreamRouteData(BaseSchema):
    stream_id: str = Field(description="判定流 ID，取自流首帧 ready 事件。")
    route: str = Field(description="更新后的前端路由。")
    updated: bool = Field(description="是否已切换；流不存在或已结束时为 false。")
