"""服务层能力导出集合。"""

from trustgate_api.services.audit import AuditContext, audit_context_from_request, audit_log
from trustgate_api.services.ban_policy import BanPolicyEvaluator, BanStatus
from trustgate_api.services.mfa import ChallengeResult, EnrollmentTicket, LockoutStatus, MfaService, MfaStatus
from trustgate_api.services.moderation import MODERATOR_ROLES, ModerationService
from trustgate_api.services.session_gate import (
    GateWatcher,
    SessionDecision,
    SessionGate,
    TrustSession,
    build_session_gate,
    decide,
)
from trustgate_api.services.trust_events import TrustChangeEvent, TrustEventBus, get_event_bus
from trustgate_api.services.trust_store import TrustStateStore
from trustgate_api.services.warning_policy import WarningPolicyEvaluator, WarningStatus, advance_warning_state

__all__ = [
    "AuditContext",
    "audit_context_from_request",
    "audit_log",
    "BanPolicyEvaluator",
    "BanStatus",
    "ChallengeResult",
    "EnrollmentTicket",
    "LockoutStatus",
    "MfaService",
    "MfaStatus",
    "MODERATOR_ROLES",
    "ModerationService",
    "GateWatcher",
    "SessionDecision",
    "SessionGate",
    "TrustSession",
    "build_session_gate",
    "decide",
    "TrustChangeEvent",
    "TrustEventBus",
    "get_event_bus",
    "TrustStateStore",
    "WarningPolicyEvaluator",
    "WarningStatus",
    "advance_warning_state",
]
