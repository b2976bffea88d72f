"""领域枚举定义。"""

from enum import StrEnum


class UserStatus(StrEnum):
    """本地账号状态。"""

    ACTIVE = "active"  # 正常可登录。
    DISABLED = "disabled"  # 已停用，拒绝登录。


class AppRole(StrEnum):
    """平台角色。"""

    OWNER = "owner"  # 平台所有者。
    ADMIN = "admin"  # 管理员。
    MODERATOR = "moderator"  # 社区管理员，可封禁与警告。
    USER = "user"  # 普通用户。


class WarningSeverity(StrEnum):
    """警告严重程度，仅影响展示，不影响确认机制。"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """返回严重程度序号，low 最小。"""
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, WarningSeverity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, WarningSeverity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, WarningSeverity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, WarningSeverity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_ORDER = (
    WarningSeverity.LOW,
    WarningSeverity.MEDIUM,
    WarningSeverity.HIGH,
    WarningSeverity.CRITICAL,
)


class WarningState(StrEnum):
    """单条警告的确认状态（单向）。"""

    PENDING = "pending"  # 待用户确认。
    ACKNOWLEDGED = "acknowledged"  # 已确认，不可撤回。


class MfaFactorType(StrEnum):
    """验证因子类型。"""

    TOTP = "totp"  # 基于时间的动态口令。


class MfaState(StrEnum):
    """用户两步验证状态。"""

    UNENROLLED = "unenrolled"  # 未开启。
    ENROLLING = "enrolling"  # 已创建未验证因子，等待首次校验。
    VERIFIED = "verified"  # 已开启。


class ChallengeMethod(StrEnum):
    """二次验证通过方式。"""

    TOTP = "totp"
    BACKUP_CODE = "backup_code"


class AuthAssurance(StrEnum):
    """会话认证强度。"""

    AAL1 = "aal1"  # 仅完成密码登录，待二次验证。
    AAL2 = "aal2"  # 已完成二次验证。


class DecisionKind(StrEnum):
    """会话门禁判定结果。"""

    ALLOW = "allow"  # 正常放行。
    REDIRECT_BANNED = "redirect_banned"  # 跳转封禁提示页。
    REDIRECT_WARNING = "redirect_warning"  # 跳转警告确认页。
    REDIRECT_MFA_CHALLENGE = "redirect_mfa_challenge"  # 跳转二次验证页。
    LOADING = "loading"  # 状态未知，禁止导航并展示加载态。


class TrustTable(StrEnum):
    """推送通知订阅的表名。"""

    BANS = "banned_users"
    WARNINGS = "user_warnings"
    MFA_FACTORS = "mfa_factors"
    BACKUP_CODES = "mfa_backup_codes"
    FAILED_ATTEMPTS = "failed_mfa_attempts"
    SESSIONS = "auth_sessions"
