from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from trustgate_api.core.errors import StoreUnavailable
from trustgate_api.models.enums import WarningSeverity, WarningState
from trustgate_api.services.warning_policy import (
    InvalidWarningTransition,
    WarningPolicyEvaluator,
    advance_warning_state,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _warn(store, user_id, reason, *, minutes=0, severity=WarningSeverity.MEDIUM):
    return store.create_warning(
        user_id=user_id,
        warned_by=uuid4(),
        reason=reason,
        severity=severity,
        now=NOW + timedelta(minutes=minutes),
    )


def test_warnings_surface_newest_first_one_at_a_time(store):
    user_id = uuid4()
    w1 = _warn(store, user_id, "first", minutes=0, severity=WarningSeverity.CRITICAL)
    w2 = _warn(store, user_id, "second", minutes=1, severity=WarningSeverity.LOW)
    evaluator = WarningPolicyEvaluator(store)

    status = evaluator.evaluate(user_id)
    assert status.has_unacknowledged
    # 按创建时间倒序，不按严重程度排序。
    assert status.current.id == w2.id

    assert evaluator.acknowledge(user_id, w2.id, now=NOW + timedelta(minutes=2))
    assert evaluator.evaluate(user_id).current.id == w1.id

    assert evaluator.acknowledge(user_id, w1.id, now=NOW + timedelta(minutes=3))
    status = evaluator.evaluate(user_id)
    assert not status.has_unacknowledged
    assert status.current is None


def test_acknowledge_is_idempotent(store):
    user_id = uuid4()
    warning = _warn(store, user_id, "spam")
    evaluator = WarningPolicyEvaluator(store)

    assert evaluator.acknowledge(user_id, warning.id, now=NOW)
    assert not evaluator.acknowledge(user_id, warning.id, now=NOW + timedelta(minutes=1))
    assert not evaluator.acknowledge(user_id, uuid4())
    assert store.get_warning(warning.id).acknowledged_at == NOW


def test_acknowledging_one_warning_leaves_others_pending(store):
    user_id = uuid4()
    keep = _warn(store, user_id, "keep", minutes=0)
    ack = _warn(store, user_id, "ack", minutes=1)
    evaluator = WarningPolicyEvaluator(store)

    evaluator.acknowledge(user_id, ack.id, now=NOW)

    assert [item.id for item in evaluator.evaluate(user_id).warnings] == [keep.id]


def test_cannot_acknowledge_another_users_warning(store):
    owner_id = uuid4()
    warning = _warn(store, owner_id, "spam")
    evaluator = WarningPolicyEvaluator(store)

    assert not evaluator.acknowledge(uuid4(), warning.id)
    assert evaluator.evaluate(owner_id).has_unacknowledged


def test_new_warning_after_all_acknowledged_blocks_again(store):
    user_id = uuid4()
    first = _warn(store, user_id, "first")
    evaluator = WarningPolicyEvaluator(store)
    evaluator.acknowledge(user_id, first.id, now=NOW)
    assert not evaluator.evaluate(user_id).has_unacknowledged

    _warn(store, user_id, "second", minutes=10)

    assert evaluator.evaluate(user_id).has_unacknowledged


def test_unauthenticated_has_no_warnings(store):
    assert not WarningPolicyEvaluator(store).evaluate(None).has_unacknowledged


def test_warning_state_only_moves_forward():
    assert advance_warning_state(WarningState.PENDING, WarningState.ACKNOWLEDGED) == WarningState.ACKNOWLEDGED
    assert advance_warning_state(WarningState.ACKNOWLEDGED, WarningState.ACKNOWLEDGED) == WarningState.ACKNOWLEDGED
    with pytest.raises(InvalidWarningTransition):
        advance_warning_state(WarningState.ACKNOWLEDGED, WarningState.PENDING)


def test_severity_ordering():
    assert WarningSeverity.LOW < WarningSeverity.MEDIUM < WarningSeverity.HIGH < WarningSeverity.CRITICAL
    assert max([WarningSeverity.HIGH, WarningSeverity.CRITICAL, WarningSeverity.LOW]) == WarningSeverity.CRITICAL


def test_store_failure_without_cache_defaults_to_no_warnings():
    class _DownStore:
        def list_unacknowledged_warnings(self, user_id):
            raise StoreUnavailable()

    status = WarningPolicyEvaluator(_DownStore()).evaluate(uuid4())
    assert not status.has_unacknowledged
    assert status.degraded

    with pytest.raises(StoreUnavailable):
        WarningPolicyEvaluator(_DownStore(), fail_closed=True).evaluate(uuid4())


def test_cache_drops_stale_entries_on_write(store):
    clock_value = [1000.0]
    evaluator = WarningPolicyEvaluator(store, cache_ttl_seconds=10, clock=lambda: clock_value[0])

    first = uuid4()
    _warn(store, first, "spam")
    evaluator.evaluate(first)
    evaluator.evaluate(uuid4())
    assert evaluator.cache_size() == 2

    # 同一用户再次写入会刷新位置，不会被当作过期条目清掉。
    clock_value[0] += 6
    evaluator.evaluate(first)
    clock_value[0] += 6
    evaluator.evaluate(uuid4())
    assert evaluator.cache_size() == 2

    evaluator.forget(first)
    assert evaluator.cache_size() == 1
