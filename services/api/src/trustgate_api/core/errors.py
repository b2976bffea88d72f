"""信任门禁领域异常。

所有异常在组件边界被捕获并转换为固定的面向用户文案，
不会回显存储层的原始错误信息。
"""

from datetime import datetime
from typing import Any


class TrustGateError(Exception):
    """领域异常基类。"""

    code = "TRUST_GATE_ERROR"
    status_code = 400
    message = "请求处理失败。"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message

    def details(self) -> dict[str, Any]:
        """返回可安全暴露给前端的扩展字段。"""
        return {}


class StoreUnavailable(TrustGateError):
    """信任状态存储暂时不可达。"""

    code = "TRUST_STORE_UNAVAILABLE"
    status_code = 503
    message = "服务暂时不可用，请稍后重试。"


class InvalidCredential(TrustGateError):
    """动态口令错误，或备用码不存在/已使用。"""

    code = "MFA_INVALID_CODE"
    status_code = 401
    message = "验证码无效。"

    def __init__(self, *, remaining_attempts: int | None = None, locked_until: datetime | None = None) -> None:
        super().__init__()
        self.remaining_attempts = remaining_attempts
        self.locked_until = locked_until

    def details(self) -> dict[str, Any]:
        return {
            "remaining_attempts": self.remaining_attempts,
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
        }


class LockedOut(TrustGateError):
    """锁定窗口内再次发起二次验证。"""

    code = "MFA_LOCKED_OUT"
    status_code = 429
    message = "尝试次数过多，请稍后再试。"

    def __init__(self, *, locked_until: datetime, retry_after_seconds: int) -> None:
        super().__init__()
        self.locked_until = locked_until
        self.retry_after_seconds = retry_after_seconds

    def details(self) -> dict[str, Any]:
        return {
            "locked_until": self.locked_until.isoformat(),
            "retry_after_seconds": self.retry_after_seconds,
        }


class EnrollmentConflict(TrustGateError):
    """新建未验证因子时与历史未验证因子命名冲突。"""

    code = "MFA_ENROLLMENT_CONFLICT"
    status_code = 409
    message = "暂时无法开启两步验证，请稍后重试。"


class MfaAlreadyEnabled(TrustGateError):
    """已存在已验证因子，需先停用再重新绑定。"""

    code = "MFA_ALREADY_ENABLED"
    status_code = 409
    message = "两步验证已开启。"


class NotFound(TrustGateError):
    """目标记录不存在，调用方应视为无事可做。"""

    code = "NOT_FOUND"
    status_code = 404
    message = "请求资源不存在。"


class MfaFactorNotFound(NotFound):
    code = "MFA_FACTOR_NOT_FOUND"
    message = "未找到可用的验证因子。"


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"
    message = "用户不存在。"


class BanNotFound(NotFound):
    code = "BAN_NOT_FOUND"
    message = "该用户当前没有生效的封禁。"


class ModerationForbidden(TrustGateError):
    """无管理权限。"""

    code = "FORBIDDEN"
    status_code = 403
    message = "无权限执行该操作。"


class InvalidModerationRequest(TrustGateError):
    """管理操作参数不合法。"""

    code = "INVALID_ARGUMENT"
    status_code = 422
    message = "请求参数不合法。"
