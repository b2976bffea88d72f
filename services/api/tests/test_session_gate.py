import asyncio
import time
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from trustgate_api.core.config import Settings
from trustgate_api.core.errors import StoreUnavailable
from trustgate_api.models.enums import DecisionKind, TrustTable, WarningSeverity
from trustgate_api.services.ban_policy import NOT_BANNED, BanStatus
from trustgate_api.services.session_gate import (
    SIGN_OUT_ACTION,
    SessionGate,
    TrustSession,
    build_session_gate,
    decide,
)
from trustgate_api.services.trust_events import TrustChangeEvent, TrustEventBus
from trustgate_api.services.trust_store import WarningRecord
from trustgate_api.services.warning_policy import NO_WARNINGS, WarningStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SETTINGS = Settings(gate_poll_interval_seconds=60, gate_store_timeout_seconds=1.0)


def _warning(user_id, reason="spam") -> WarningRecord:
    return WarningRecord(
        id=uuid4(),
        user_id=user_id,
        warned_by=None,
        reason=reason,
        severity=WarningSeverity.MEDIUM,
        created_at=NOW,
        acknowledged_at=None,
    )


class _StubBans:
    def __init__(self, status: BanStatus = NOT_BANNED, delay: float = 0.0):
        self.status = status
        self.delay = delay
        self.calls = 0

    def evaluate(self, user_id, now=None):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if isinstance(self.status, Exception):
            raise self.status
        return self.status

    def forget(self, user_id):
        pass


class _StubWarnings:
    def __init__(self, status: WarningStatus = NO_WARNINGS):
        self.status = status
        self.forgotten = []

    def evaluate(self, user_id):
        return self.status

    def forget(self, user_id):
        self.forgotten.append(user_id)


BANNED = BanStatus(is_banned=True, reason="harassment", expires_at=NOW + timedelta(days=1))


# -- 纯判定 -----------------------------------------------------------------


def test_anonymous_session_is_allowed():
    decision = decide(None, "/feed", BANNED, NO_WARNINGS, SETTINGS)
    assert decision.kind == DecisionKind.ALLOW
    assert decision.allowed


def test_ban_wins_over_everything():
    user_id = uuid4()
    session = TrustSession(user_id=user_id, mfa_pending=True)
    warnings = WarningStatus(warnings=(_warning(user_id),))

    decision = decide(session, "/feed", BANNED, warnings, SETTINGS)

    assert decision.kind == DecisionKind.REDIRECT_BANNED
    assert decision.redirect_to == "/banned"
    assert decision.reason == "harassment"
    assert decision.expires_at == NOW + timedelta(days=1)


def test_mfa_challenge_before_warning():
    user_id = uuid4()
    session = TrustSession(user_id=user_id, mfa_pending=True)
    warnings = WarningStatus(warnings=(_warning(user_id),))

    decision = decide(session, "/feed", NOT_BANNED, warnings, SETTINGS)

    assert decision.kind == DecisionKind.REDIRECT_MFA_CHALLENGE
    assert decision.redirect_to == "/verify-mfa"


def test_unacknowledged_warning_redirects_with_current_warning():
    user_id = uuid4()
    newest = _warning(user_id, "newest")
    older = _warning(user_id, "older")

    decision = decide(
        TrustSession(user_id=user_id), "/feed", NOT_BANNED, WarningStatus(warnings=(newest, older)), SETTINGS
    )

    assert decision.kind == DecisionKind.REDIRECT_WARNING
    assert decision.redirect_to == "/warning"
    assert decision.warning == newest


def test_no_redirect_when_already_on_target_route():
    session = TrustSession(user_id=uuid4())

    decision = decide(session, "/banned", BANNED, NO_WARNINGS, SETTINGS)

    assert decision.kind == DecisionKind.REDIRECT_BANNED
    assert decision.redirect_to is None


@pytest.mark.parametrize("route", ["/banned", "/warning", "/verify-mfa"])
def test_cleared_user_leaves_sanction_route_for_landing(route):
    decision = decide(TrustSession(user_id=uuid4()), route, NOT_BANNED, NO_WARNINGS, SETTINGS)

    assert decision.kind == DecisionKind.ALLOW
    assert decision.redirect_to == "/"


def test_cleared_user_stays_on_regular_route():
    decision = decide(TrustSession(user_id=uuid4()), "/feed", NOT_BANNED, NO_WARNINGS, SETTINGS)

    assert decision.kind == DecisionKind.ALLOW
    assert decision.redirect_to is None


def test_degraded_inputs_are_flagged():
    degraded = BanStatus(is_banned=False, degraded=True)

    decision = decide(TrustSession(user_id=uuid4()), "/feed", degraded, NO_WARNINGS, SETTINGS)

    assert decision.allowed
    assert decision.degraded


# -- 单次判定 ---------------------------------------------------------------


def test_evaluate_combines_both_evaluators():
    user_id = uuid4()
    gate = SessionGate(_StubBans(), _StubWarnings(WarningStatus(warnings=(_warning(user_id),))), settings=SETTINGS)

    decision = asyncio.run(gate.evaluate(TrustSession(user_id=user_id), "/feed"))

    assert decision.kind == DecisionKind.REDIRECT_WARNING


def test_evaluate_timeout_yields_loading():
    settings = Settings(gate_poll_interval_seconds=60, gate_store_timeout_seconds=0.05)
    gate = SessionGate(_StubBans(delay=0.3), _StubWarnings(), settings=settings)

    decision = asyncio.run(gate.evaluate(TrustSession(user_id=uuid4()), "/feed"))

    assert decision.kind == DecisionKind.LOADING
    assert not decision.allowed


def test_evaluate_fail_closed_yields_degraded_loading():
    gate = SessionGate(_StubBans(StoreUnavailable()), _StubWarnings(), settings=SETTINGS)

    decision = asyncio.run(gate.evaluate(TrustSession(user_id=uuid4()), "/feed"))

    assert decision.kind == DecisionKind.LOADING
    assert decision.degraded


def test_evaluate_against_real_store(store):
    user_id = uuid4()
    store.create_ban(user_id=user_id, banned_by=uuid4(), reason="spam", expires_at=None)
    gate = build_session_gate(store, settings=SETTINGS)

    decision = asyncio.run(gate.evaluate(TrustSession(user_id=user_id), "/feed"))

    assert decision.kind == DecisionKind.REDIRECT_BANNED
    assert decision.reason == "spam"


# -- 响应式判定 -------------------------------------------------------------


async def _next(watcher, timeout=1.0):
    return await asyncio.wait_for(watcher.next_decision(), timeout)


def test_watcher_reacts_to_pushed_changes():
    user_id = uuid4()
    bus = TrustEventBus()
    bans = _StubBans()
    gate = SessionGate(bans, _StubWarnings(), event_bus=bus, settings=SETTINGS)
    seen = []

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=user_id), "/feed", listener=seen.append)
        first = await _next(watcher)
        assert first.kind == DecisionKind.ALLOW

        bans.status = BANNED
        bus.publish(TrustChangeEvent(table=TrustTable.BANS, user_id=user_id, action="insert"))
        second = await _next(watcher)
        assert second.kind == DecisionKind.REDIRECT_BANNED

        # 其他用户的变更不会触发判定。
        before = watcher.evaluations
        bus.publish(TrustChangeEvent(table=TrustTable.BANS, user_id=uuid4(), action="insert"))
        await asyncio.sleep(0.05)
        assert watcher.evaluations == before

        await watcher.aclose()

    asyncio.run(scenario())
    assert [decision.kind for decision in seen] == [DecisionKind.ALLOW, DecisionKind.REDIRECT_BANNED]
    assert bus.listener_count() == 0


def test_watcher_coalesces_bursts_and_skips_unchanged_results():
    gate = SessionGate(_StubBans(), _StubWarnings(), event_bus=TrustEventBus(), settings=SETTINGS)

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=uuid4()), "/feed")
        await _next(watcher)
        assert watcher.evaluations == 1

        for _ in range(5):
            watcher.request_evaluation()
        await asyncio.sleep(0.1)
        assert watcher.evaluations == 2

        # 结果未变化，不会再次产出。
        with pytest.raises(asyncio.TimeoutError):
            await _next(watcher, timeout=0.1)
        await watcher.aclose()

    asyncio.run(scenario())


def test_watcher_polls_for_time_based_changes():
    settings = Settings(gate_poll_interval_seconds=0.05, gate_store_timeout_seconds=1.0)
    bans = _StubBans(BANNED)
    gate = SessionGate(bans, _StubWarnings(), settings=settings)

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=uuid4()), "/banned")
        first = await _next(watcher)
        assert first.kind == DecisionKind.REDIRECT_BANNED

        # 封禁到期没有推送，由轮询发现。
        bans.status = NOT_BANNED
        second = await _next(watcher)
        assert second.kind == DecisionKind.ALLOW
        assert second.redirect_to == "/"
        await watcher.aclose()

    asyncio.run(scenario())


def test_watcher_navigation_reevaluates_for_new_route():
    gate = SessionGate(_StubBans(BANNED), _StubWarnings(), settings=SETTINGS)

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=uuid4()), "/feed")
        first = await _next(watcher)
        assert first.redirect_to == "/banned"

        watcher.navigate("/banned")
        second = await _next(watcher)
        assert second.kind == DecisionKind.REDIRECT_BANNED
        assert second.redirect_to is None
        assert watcher.route == "/banned"
        await watcher.aclose()

    asyncio.run(scenario())


def test_local_acknowledge_refreshes_immediately():
    user_id = uuid4()
    warnings = _StubWarnings(WarningStatus(warnings=(_warning(user_id),)))
    gate = SessionGate(_StubBans(), warnings, settings=SETTINGS)

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=user_id), "/warning")
        first = await _next(watcher)
        assert first.kind == DecisionKind.REDIRECT_WARNING

        warnings.status = NO_WARNINGS
        watcher.notify_acknowledged()
        second = await _next(watcher)
        assert second.kind == DecisionKind.ALLOW
        assert second.redirect_to == "/"
        await watcher.aclose()

    asyncio.run(scenario())
    assert warnings.forgotten == [user_id]


def test_stop_discards_in_flight_evaluation():
    bans = _StubBans(BANNED, delay=0.2)
    gate = SessionGate(bans, _StubWarnings(), settings=SETTINGS)

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=uuid4()), "/feed")
        await asyncio.sleep(0.05)
        assert bans.calls == 1
        watcher.stop()
        await asyncio.sleep(0.3)

        assert watcher.last_decision is None
        assert await watcher.next_decision() is None
        await watcher.aclose()

    asyncio.run(scenario())


def test_sign_out_event_stops_watcher():
    user_id = uuid4()
    bus = TrustEventBus()
    gate = SessionGate(_StubBans(), _StubWarnings(), event_bus=bus, settings=SETTINGS)

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=user_id), "/feed")
        await _next(watcher)

        bus.publish(TrustChangeEvent(table=TrustTable.SESSIONS, user_id=user_id, action=SIGN_OUT_ACTION))
        assert await _next(watcher) is None
        assert watcher.stopped
        await watcher.aclose()

    asyncio.run(scenario())
    assert bus.listener_count() == 0


def test_failing_listener_does_not_break_watcher():
    gate = SessionGate(_StubBans(), _StubWarnings(), settings=SETTINGS)

    def _broken(_decision):
        raise RuntimeError("boom")

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=uuid4()), "/feed", listener=_broken)
        decision = await _next(watcher)
        assert decision.allowed
        await watcher.aclose()

    asyncio.run(scenario())


def test_unexpected_evaluation_error_emits_degraded_loading():
    bans = _StubBans(RuntimeError("driver exploded"))
    gate = SessionGate(bans, _StubWarnings(), settings=SETTINGS)

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=uuid4()), "/feed")
        first = await _next(watcher)
        assert first.kind == DecisionKind.LOADING
        assert first.degraded

        # 判定任务没有因异常退出，后续触发仍会重新判定。
        bans.status = NOT_BANNED
        watcher.request_evaluation()
        second = await _next(watcher)
        assert second.kind == DecisionKind.ALLOW
        await watcher.aclose()

    asyncio.run(scenario())


def test_gate_moves_open_watcher_to_new_route():
    user_id = uuid4()
    bans = _StubBans(BANNED)
    gate = SessionGate(bans, _StubWarnings(), settings=SETTINGS)

    async def scenario():
        watcher = gate.watch(TrustSession(user_id=user_id), "/feed")
        await _next(watcher)
        assert gate.active_watchers() == 1

        assert not gate.navigate(watcher.id, uuid4(), "/banned")
        assert not gate.navigate("unknown", user_id, "/banned")
        assert gate.navigate(watcher.id, user_id, "/banned")
        assert (await _next(watcher)).redirect_to is None

        # 跟随跳转后解除封禁，应回到落地页。
        bans.status = NOT_BANNED
        watcher.request_evaluation()
        cleared = await _next(watcher)
        assert cleared.kind == DecisionKind.ALLOW
        assert cleared.redirect_to == "/"

        await watcher.aclose()
        assert gate.active_watchers() == 0
        assert not gate.navigate(watcher.id, user_id, "/feed")

    asyncio.run(scenario())


def test_gate_forget_clears_both_evaluator_caches(store):
    user_id = uuid4()
    store.create_warning(user_id=user_id, warned_by=uuid4(), reason="spam", severity=WarningSeverity.LOW, now=NOW)
    gate = build_session_gate(store, settings=SETTINGS)

    asyncio.run(gate.evaluate(TrustSession(user_id=user_id), "/feed"))
    assert gate.ban_evaluator.cache_size() == 1
    assert gate.warning_evaluator.cache_size() == 1

    gate.forget(user_id)
    assert gate.ban_evaluator.cache_size() == 0
    assert gate.warning_evaluator.cache_size() == 0
