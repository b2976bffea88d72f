from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from trustgate_api.core.config import get_settings
from trustgate_api.core.errors import (
    EnrollmentConflict,
    InvalidCredential,
    LockedOut,
    MfaAlreadyEnabled,
    MfaFactorNotFound,
)
from trustgate_api.models.enums import ChallengeMethod, MfaState
from trustgate_api.services.mfa import MfaService
from trustgate_api.services.totp import totp_code

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _code(secret: str, at: datetime) -> str:
    return totp_code(secret, at=at.timestamp())


def _wrong_code(secret: str, at: datetime) -> str:
    right = _code(secret, at)
    return "000000" if right != "000000" else "111111"


@pytest.fixture
def mfa(store) -> MfaService:
    return MfaService(store, get_settings())


@pytest.fixture
def enrolled(mfa):
    """已开启两步验证的用户，返回 (user_id, secret, backup_codes)。"""
    user_id = uuid4()
    ticket = mfa.begin_enroll(user_id, "alice@example.com", now=NOW)
    mfa.confirm_enroll(user_id, _code(ticket.secret, NOW), now=NOW)
    return user_id, ticket.secret, ticket.backup_codes


def test_enrollment_moves_through_states(mfa):
    user_id = uuid4()
    assert mfa.status(user_id).state == MfaState.UNENROLLED

    ticket = mfa.begin_enroll(user_id, "alice@example.com", now=NOW)
    assert mfa.status(user_id).state == MfaState.ENROLLING
    assert ticket.otpauth_uri.startswith("otpauth://totp/")
    assert len(ticket.backup_codes) == 10

    status = mfa.confirm_enroll(user_id, _code(ticket.secret, NOW), now=NOW)
    assert status.state == MfaState.VERIFIED
    assert status.factor_id == ticket.factor_id
    assert status.backup_codes_remaining == 10
    assert mfa.status(user_id).state == MfaState.VERIFIED


def test_wrong_enroll_code_keeps_factor_unverified(mfa, store):
    user_id = uuid4()
    ticket = mfa.begin_enroll(user_id, "alice@example.com", now=NOW)

    with pytest.raises(InvalidCredential):
        mfa.confirm_enroll(user_id, _wrong_code(ticket.secret, NOW), now=NOW)

    assert mfa.status(user_id).state == MfaState.ENROLLING
    # 绑定阶段的错误不计入登录失败次数。
    assert store.count_failed_attempts(user_id) == 0

    assert mfa.cancel_enroll(user_id) == 1
    assert mfa.status(user_id).state == MfaState.UNENROLLED


def test_backup_codes_are_inert_until_enrollment_confirmed(mfa, store):
    user_id = uuid4()
    mfa.begin_enroll(user_id, "alice@example.com", now=NOW)

    assert store.count_unused_backup_codes(user_id) == 0
    with pytest.raises(MfaFactorNotFound):
        mfa.challenge(user_id, backup_code="ABCD1234", now=NOW)


def test_repeated_begin_enroll_keeps_single_pending_factor(mfa, store):
    user_id = uuid4()
    first = mfa.begin_enroll(user_id, "alice@example.com", now=NOW)
    second = mfa.begin_enroll(user_id, "alice@example.com", now=NOW + timedelta(seconds=5))

    factors = store.list_factors(user_id)
    assert [factor.id for factor in factors] == [second.factor_id]

    # 旧密钥已失效，只有最近一次的密钥能完成绑定。
    assert first.secret != second.secret
    mfa.confirm_enroll(user_id, _code(second.secret, NOW), now=NOW)

    assert sum(1 for factor in store.list_factors(user_id) if factor.verified) == 1
    with pytest.raises(MfaAlreadyEnabled):
        mfa.begin_enroll(user_id, "alice@example.com", now=NOW)


class _ConflictingStore:
    """首 N 次创建因子时模拟命名冲突。"""

    def __init__(self, inner, conflicts: int):
        self._inner = inner
        self.conflicts = conflicts
        self.cleanups = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def delete_unverified_factors(self, user_id):
        self.cleanups += 1
        return self._inner.delete_unverified_factors(user_id)

    def create_factor(self, **kwargs):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise EnrollmentConflict()
        return self._inner.create_factor(**kwargs)


def test_begin_enroll_retries_once_after_conflict(store):
    conflicting = _ConflictingStore(store, conflicts=1)
    mfa = MfaService(conflicting, get_settings())

    ticket = mfa.begin_enroll(uuid4(), "alice@example.com", now=NOW)

    assert ticket.factor_id is not None
    assert conflicting.cleanups == 2


def test_begin_enroll_gives_up_after_second_conflict(store):
    conflicting = _ConflictingStore(store, conflicts=2)
    mfa = MfaService(conflicting, get_settings())

    with pytest.raises(EnrollmentConflict):
        mfa.begin_enroll(uuid4(), "alice@example.com", now=NOW)
    assert conflicting.cleanups == 2


def test_challenge_with_totp(mfa, enrolled):
    user_id, secret, _codes = enrolled
    at = NOW + timedelta(hours=1)

    result = mfa.challenge(user_id, code=_code(secret, at), now=at)

    assert result.method == ChallengeMethod.TOTP
    assert result.backup_codes_remaining == 10


def test_backup_code_is_single_use(mfa, enrolled, store):
    user_id, _secret, codes = enrolled
    at = NOW + timedelta(hours=1)

    result = mfa.challenge(user_id, backup_code=codes[0].lower(), now=at)
    assert result.method == ChallengeMethod.BACKUP_CODE
    assert result.backup_codes_remaining == 9

    with pytest.raises(InvalidCredential):
        mfa.challenge(user_id, backup_code=codes[0], now=at + timedelta(minutes=1))
    assert store.count_failed_attempts(user_id) == 1
    assert mfa.status(user_id).backup_codes_remaining == 9


def test_lockout_after_five_failures_and_no_log_while_locked(mfa, enrolled, store):
    user_id, secret, _codes = enrolled
    start = NOW + timedelta(hours=1)

    for attempt in range(4):
        at = start + timedelta(seconds=attempt)
        with pytest.raises(InvalidCredential) as exc:
            mfa.challenge(user_id, code=_wrong_code(secret, at), now=at)
        assert exc.value.remaining_attempts == 4 - attempt
        assert exc.value.locked_until is None

    fifth = start + timedelta(seconds=4)
    with pytest.raises(InvalidCredential) as exc:
        mfa.challenge(user_id, code=_wrong_code(secret, fifth), now=fifth)
    assert exc.value.remaining_attempts == 0
    # 锁定至窗口内第 5 条最近失败记录（即最早一条）加 15 分钟。
    assert exc.value.locked_until == start + timedelta(minutes=15)

    sixth = start + timedelta(minutes=1)
    with pytest.raises(LockedOut) as locked:
        mfa.challenge(user_id, code=_code(secret, sixth), now=sixth)
    assert locked.value.locked_until == start + timedelta(minutes=15)
    assert locked.value.retry_after_seconds == 14 * 60
    assert store.count_failed_attempts(user_id) == 5

    lockout = mfa.lockout_status(user_id, now=sixth)
    assert lockout.locked
    assert lockout.failed_attempts == 5
    assert lockout.remaining_attempts == 0


def test_lockout_expires_with_window(mfa, enrolled, store):
    user_id, secret, _codes = enrolled
    start = NOW + timedelta(hours=1)
    for attempt in range(5):
        at = start + timedelta(seconds=attempt)
        with pytest.raises(InvalidCredential):
            mfa.challenge(user_id, code=_wrong_code(secret, at), now=at)

    later = start + timedelta(minutes=15, seconds=1)
    assert not mfa.lockout_status(user_id, now=later).locked

    result = mfa.challenge(user_id, code=_code(secret, later), now=later)
    assert result.method == ChallengeMethod.TOTP
    # 成功不会清空失败记录，锁定只随时间窗口滑出。
    assert store.count_failed_attempts(user_id) == 5
    assert mfa.lockout_status(user_id, now=later).failed_attempts == 4


def test_failures_outside_window_do_not_count(mfa, enrolled):
    user_id, secret, _codes = enrolled
    start = NOW + timedelta(hours=1)
    for attempt in range(4):
        at = start + timedelta(minutes=attempt * 5)
        with pytest.raises(InvalidCredential):
            mfa.challenge(user_id, code=_wrong_code(secret, at), now=at)

    # 第 5 次失败时最早一次已滑出 15 分钟窗口。
    at = start + timedelta(minutes=20)
    with pytest.raises(InvalidCredential) as exc:
        mfa.challenge(user_id, code=_wrong_code(secret, at), now=at)
    assert exc.value.locked_until is None
    assert not mfa.lockout_status(user_id, now=at).locked


def test_challenge_without_verified_factor_logs_nothing(mfa, store):
    user_id = uuid4()

    with pytest.raises(MfaFactorNotFound):
        mfa.challenge(user_id, code="123456", now=NOW)
    assert store.count_failed_attempts(user_id) == 0


def test_disable_and_reset_remove_everything(mfa, enrolled, store):
    user_id, _secret, _codes = enrolled

    assert mfa.disable(user_id) == 1
    assert mfa.status(user_id).state == MfaState.UNENROLLED
    assert store.count_unused_backup_codes(user_id) == 0

    ticket = mfa.begin_enroll(user_id, "alice@example.com", now=NOW)
    mfa.confirm_enroll(user_id, _code(ticket.secret, NOW), now=NOW)
    assert mfa.reset(user_id).state == MfaState.UNENROLLED
    assert store.list_factors(user_id) == []
