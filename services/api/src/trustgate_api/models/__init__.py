"""ORM 模型导出集合。"""

from trustgate_api.models.audit import AuditLog
from trustgate_api.models.auth import FailedMfaAttempt, MfaBackupCode, MfaFactor, UserCredential
from trustgate_api.models.moderation import ModerationWarning, UserBan
from trustgate_api.models.user import User, UserRole

__all__ = [
    "AuditLog",
    "FailedMfaAttempt",
    "MfaBackupCode",
    "MfaFactor",
    "ModerationWarning",
    "User",
    "UserBan",
    "UserCredential",
    "UserRole",
]
