"""两步验证状态机。

状态：未开启 -> 绑定中（存在未验证因子）-> 已开启。
登录时的二次验证支持动态口令与一次性备用码，
滑动窗口内失败次数达到阈值后进入锁定，锁定期间直接拒绝且不再记账。
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NoReturn
from uuid import UUID

from trustgate_api.core.config import Settings, get_settings
from trustgate_api.core.errors import (
    EnrollmentConflict,
    InvalidCredential,
    LockedOut,
    MfaAlreadyEnabled,
    MfaFactorNotFound,
)
from trustgate_api.models.enums import ChallengeMethod, MfaState
from trustgate_api.services.audit import AuditContext
from trustgate_api.services.local_auth import hash_backup_code, verify_backup_code
from trustgate_api.services.totp import (
    build_otpauth_uri,
    generate_backup_codes,
    generate_totp_secret,
    normalize_backup_code,
    verify_totp,
)
from trustgate_api.services.trust_store import FactorRecord, TrustStateStore
from trustgate_api.utils.time import utc_now

logger = logging.getLogger("trustgate_api.mfa")


@dataclass(frozen=True)
class MfaStatus:
    state: MfaState
    factor_id: UUID | None = None
    backup_codes_remaining: int = 0


@dataclass(frozen=True)
class EnrollmentTicket:
    """绑定凭据，备用码明文仅在此返回一次。"""

    factor_id: UUID
    secret: str
    otpauth_uri: str
    backup_codes: tuple[str, ...]


@dataclass(frozen=True)
class ChallengeResult:
    method: ChallengeMethod
    backup_codes_remaining: int


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    locked_until: datetime | None
    retry_after_seconds: int
    failed_attempts: int
    remaining_attempts: int


class MfaService:
    """两步验证绑定、校验与锁定。"""

    def __init__(self, store: TrustStateStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    def status(self, user_id: UUID) -> MfaStatus:
        factors = self._store.list_factors(user_id)
        verified = _first_verified(factors)
        if verified is not None:
            return MfaStatus(
                state=MfaState.VERIFIED,
                factor_id=verified.id,
                backup_codes_remaining=self._store.count_unused_backup_codes(user_id),
            )
        pending = next((factor for factor in factors if not factor.verified), None)
        if pending is not None:
            return MfaStatus(state=MfaState.ENROLLING, factor_id=pending.id)
        return MfaStatus(state=MfaState.UNENROLLED)

    def begin_enroll(self, user_id: UUID, account_name: str, now: datetime | None = None) -> EnrollmentTicket:
        """开始绑定：清理历史未验证因子后新建一个，并生成待生效的备用码。"""
        settings = self._settings
        if _first_verified(self._store.list_factors(user_id)) is not None:
            raise MfaAlreadyEnabled()

        secret = generate_totp_secret()
        backup_codes = generate_backup_codes(
            count=settings.mfa_backup_code_count,
            length=settings.mfa_backup_code_length,
        )
        code_hashes = [hash_backup_code(code) for code in backup_codes]

        self._store.delete_unverified_factors(user_id)
        try:
            factor = self._store.create_factor(
                user_id=user_id,
                secret=secret,
                friendly_name=settings.mfa_enroll_factor_name,
                backup_code_hashes=code_hashes,
                now=now,
            )
        except EnrollmentConflict:
            # 并发绑定残留的未验证因子：强制清理后仅重试一次。
            logger.warning("mfa enroll conflict, retrying after cleanup user_id=%s", user_id)
            self._store.delete_unverified_factors(user_id)
            factor = self._store.create_factor(
                user_id=user_id,
                secret=secret,
                friendly_name=settings.mfa_enroll_factor_name,
                backup_code_hashes=code_hashes,
                now=now,
            )

        logger.info("mfa enroll started user_id=%s factor_id=%s", user_id, factor.id)
        return EnrollmentTicket(
            factor_id=factor.id,
            secret=secret,
            otpauth_uri=build_otpauth_uri(
                secret=secret,
                account_name=account_name,
                issuer=settings.mfa_issuer,
                period=settings.mfa_totp_period_seconds,
                digits=settings.mfa_totp_digits,
            ),
            backup_codes=tuple(backup_codes),
        )

    def confirm_enroll(self, user_id: UUID, code: str, now: datetime | None = None) -> MfaStatus:
        """用首个动态口令确认最近一次创建的未验证因子。"""
        now = now or utc_now()
        factors = self._store.list_factors(user_id)
        if _first_verified(factors) is not None:
            raise MfaAlreadyEnabled()
        factor = next((item for item in factors if not item.verified), None)
        if factor is None:
            raise MfaFactorNotFound()

        if not self._check_totp(code, factor.secret, now):
            logger.info("mfa enroll code rejected user_id=%s factor_id=%s", user_id, factor.id)
            raise InvalidCredential()
        if not self._store.verify_factor(factor_id=factor.id, user_id=user_id, now=now):
            # 校验期间因子已被取消或替换。
            raise MfaFactorNotFound()

        logger.info("mfa enabled user_id=%s factor_id=%s", user_id, factor.id)
        return MfaStatus(
            state=MfaState.VERIFIED,
            factor_id=factor.id,
            backup_codes_remaining=self._store.count_unused_backup_codes(user_id),
        )

    def cancel_enroll(self, user_id: UUID) -> int:
        removed = self._store.delete_unverified_factors(user_id)
        if removed:
            logger.info("mfa enroll cancelled user_id=%s removed=%s", user_id, removed)
        return removed

    def challenge(
        self,
        user_id: UUID,
        *,
        code: str | None = None,
        backup_code: str | None = None,
        now: datetime | None = None,
    ) -> ChallengeResult:
        """登录二次验证。

        提供 backup_code 时走备用码分支，否则校验动态口令。
        任一分支失败都会追加失败记录并重新计算锁定。
        """
        now = now or utc_now()
        lockout = self.lockout_status(user_id, now=now)
        if lockout.locked and lockout.locked_until is not None:
            logger.warning("mfa challenge rejected, locked out user_id=%s", user_id)
            raise LockedOut(locked_until=lockout.locked_until, retry_after_seconds=lockout.retry_after_seconds)

        factor = _first_verified(self._store.list_factors(user_id))
        if factor is None:
            raise MfaFactorNotFound()

        if backup_code is not None:
            if self._redeem_backup_code(user_id, backup_code, now):
                logger.info("mfa challenge passed by backup code user_id=%s", user_id)
                return ChallengeResult(
                    method=ChallengeMethod.BACKUP_CODE,
                    backup_codes_remaining=self._store.count_unused_backup_codes(user_id),
                )
            self._fail(user_id, now)

        if code is not None and self._check_totp(code, factor.secret, now):
            logger.info("mfa challenge passed user_id=%s", user_id)
            return ChallengeResult(
                method=ChallengeMethod.TOTP,
                backup_codes_remaining=self._store.count_unused_backup_codes(user_id),
            )
        self._fail(user_id, now)

    def lockout_status(self, user_id: UUID, now: datetime | None = None) -> LockoutStatus:
        """滑动窗口内失败次数达到阈值即锁定，直到第阈值条最近记录加窗口时长。"""
        now = now or utc_now()
        threshold = self._settings.mfa_lockout_threshold
        window = timedelta(seconds=self._settings.mfa_lockout_window_seconds)
        attempts = self._store.list_failed_attempts_since(user_id=user_id, since=now - window)
        failed = len(attempts)

        locked_until: datetime | None = None
        if failed >= threshold:
            candidate = attempts[threshold - 1] + window
            if candidate > now:
                locked_until = candidate

        retry_after = 0
        if locked_until is not None:
            retry_after = max(1, math.ceil((locked_until - now).total_seconds()))
        return LockoutStatus(
            locked=locked_until is not None,
            locked_until=locked_until,
            retry_after_seconds=retry_after,
            failed_attempts=failed,
            remaining_attempts=max(0, threshold - failed),
        )

    def disable(self, user_id: UUID, audit: AuditContext | None = None) -> int:
        """删除全部因子与备用码，不可恢复。"""
        removed = self._store.delete_all_mfa(user_id=user_id, audit=audit)
        logger.info("mfa disabled user_id=%s factors_removed=%s", user_id, removed)
        return removed

    def reset(self, user_id: UUID, audit: AuditContext | None = None) -> MfaStatus:
        """与 disable 机制相同，返回重置后的未开启状态。"""
        self.disable(user_id, audit=audit)
        return MfaStatus(state=MfaState.UNENROLLED)

    def _check_totp(self, code: str, secret: str, now: datetime) -> bool:
        settings = self._settings
        return verify_totp(
            code=code,
            secret=secret,
            period=settings.mfa_totp_period_seconds,
            digits=settings.mfa_totp_digits,
            window=settings.mfa_totp_window,
            now=now.timestamp(),
        )

    def _redeem_backup_code(self, user_id: UUID, backup_code: str, now: datetime) -> bool:
        normalized = normalize_backup_code(backup_code, length=self._settings.mfa_backup_code_length)
        if normalized is None:
            return False
        for candidate in self._store.list_unused_backup_codes(user_id):
            if verify_backup_code(normalized, candidate.code_hash):
                # 条件更新失败说明已被并发兑换。
                return self._store.consume_backup_code(code_id=candidate.id, user_id=user_id, now=now)
        return False

    def _fail(self, user_id: UUID, now: datetime) -> NoReturn:
        self._store.record_failed_attempt(user_id=user_id, now=now)
        lockout = self.lockout_status(user_id, now=now)
        if lockout.locked:
            logger.warning(
                "mfa lockout entered user_id=%s failed_attempts=%s", user_id, lockout.failed_attempts
            )
        else:
            logger.info("mfa challenge failed user_id=%s remaining=%s", user_id, lockout.remaining_attempts)
        raise InvalidCredential(remaining_attempts=lockout.remaining_attempts, locked_until=lockout.locked_until)


def _first_verified(factors: list[FactorRecord]) -> FactorRecord | None:
    return next((factor for factor in factors if factor.verified), None)
