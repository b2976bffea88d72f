"""会话门禁编排。

把封禁、警告与二次验证状态合并为唯一的导航判定：
封禁优先，其次待二次验证，再次未确认警告，最后正常放行。
GateWatcher 把推送事件、轮询、本地确认与导航合并为一个触发信号，
同一时刻只运行一次判定，仅在结果变化时通知订阅方。
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from trustgate_api.core.config import Settings, get_settings
from trustgate_api.core.errors import StoreUnavailable
from trustgate_api.models.enums import DecisionKind, TrustTable
from trustgate_api.services.ban_policy import BanPolicyEvaluator, BanStatus
from trustgate_api.services.trust_events import TrustChangeEvent, TrustEventBus
from trustgate_api.services.trust_store import TrustStateStore, WarningRecord
from trustgate_api.services.warning_policy import WarningPolicyEvaluator, WarningStatus

logger = logging.getLogger("trustgate_api.gate")

SIGN_OUT_ACTION = "sign_out"


@dataclass(frozen=True)
class TrustSession:
    """当前会话的最小视图。"""

    user_id: UUID
    email: str | None = None
    mfa_pending: bool = False


@dataclass(frozen=True)
class SessionDecision:
    """门禁判定。redirect_to 为空表示停留在当前路由。"""

    kind: DecisionKind
    redirect_to: str | None = None
    reason: str | None = None
    expires_at: datetime | None = None
    warning: WarningRecord | None = None
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return self.kind == DecisionKind.ALLOW


LOADING = SessionDecision(kind=DecisionKind.LOADING)


def _target(route: str, target: str) -> str | None:
    # 已在目标页时不再重定向，避免循环跳转。
    return None if route == target else target


def decide(
    session: TrustSession | None,
    route: str,
    ban: BanStatus,
    warnings: WarningStatus,
    settings: Settings | None = None,
) -> SessionDecision:
    """纯函数判定，不访问存储。"""
    settings = settings or get_settings()
    if session is None:
        return SessionDecision(kind=DecisionKind.ALLOW)

    degraded = ban.degraded or warnings.degraded
    if ban.is_banned:
        return SessionDecision(
            kind=DecisionKind.REDIRECT_BANNED,
            redirect_to=_target(route, settings.gate_banned_route),
            reason=ban.reason,
            expires_at=ban.expires_at,
            degraded=degraded,
        )
    if session.mfa_pending:
        return SessionDecision(
            kind=DecisionKind.REDIRECT_MFA_CHALLENGE,
            redirect_to=_target(route, settings.gate_mfa_route),
            degraded=degraded,
        )
    if warnings.has_unacknowledged:
        return SessionDecision(
            kind=DecisionKind.REDIRECT_WARNING,
            redirect_to=_target(route, settings.gate_warning_route),
            warning=warnings.current,
            degraded=degraded,
        )

    # 解除限制后回到默认落地页，而不是受限前所在页面。
    sanction_routes = {settings.gate_banned_route, settings.gate_warning_route, settings.gate_mfa_route}
    redirect_to = settings.gate_default_landing_route if route in sanction_routes else None
    return SessionDecision(kind=DecisionKind.ALLOW, redirect_to=redirect_to, degraded=degraded)


class SessionGate:
    """会话门禁。"""

    def __init__(
        self,
        ban_evaluator: BanPolicyEvaluator,
        warning_evaluator: WarningPolicyEvaluator,
        *,
        event_bus: TrustEventBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.ban_evaluator = ban_evaluator
        self.warning_evaluator = warning_evaluator
        self.event_bus = event_bus
        self.settings = settings or get_settings()
        self._watchers: dict[str, GateWatcher] = {}

    async def evaluate(self, session: TrustSession | None, route: str) -> SessionDecision:
        """并发读取封禁与警告，超时或拒绝放行策略下的存储故障返回加载态。"""
        if session is None:
            return decide(None, route, BanStatus(is_banned=False), WarningStatus(), self.settings)
        try:
            ban, warnings = await asyncio.wait_for(
                asyncio.gather(
                    asyncio.to_thread(self.ban_evaluator.evaluate, session.user_id),
                    asyncio.to_thread(self.warning_evaluator.evaluate, session.user_id),
                ),
                timeout=self.settings.gate_store_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("gate evaluation timed out user_id=%s", session.user_id)
            return LOADING
        except StoreUnavailable:
            logger.error("gate evaluation failed closed user_id=%s", session.user_id)
            return SessionDecision(kind=DecisionKind.LOADING, degraded=True)
        return decide(session, route, ban, warnings, self.settings)

    def watch(
        self,
        session: TrustSession,
        route: str,
        listener: Callable[[SessionDecision], None] | None = None,
    ) -> "GateWatcher":
        """启动响应式判定，需在事件循环内调用。"""
        watcher = GateWatcher(self, session, route)
        self._watchers[watcher.id] = watcher
        if listener is not None:
            watcher.add_listener(listener)
        watcher.start()
        return watcher

    def navigate(self, watcher_id: str, user_id: UUID, route: str) -> bool:
        """把进行中的判定流切换到新路由；流不存在或不属于该用户时返回 False。"""
        watcher = self._watchers.get(watcher_id)
        if watcher is None or watcher.user_id != user_id or watcher.stopped:
            return False
        watcher.navigate(route)
        return True

    def forget(self, user_id: UUID) -> None:
        """会话结束时丢弃该用户在两个评估器中的缓存。"""
        self.ban_evaluator.forget(user_id)
        self.warning_evaluator.forget(user_id)

    def active_watchers(self) -> int:
        return len(self._watchers)

    def _release(self, watcher_id: str) -> None:
        self._watchers.pop(watcher_id, None)


class GateWatcher:
    """单个会话的响应式门禁。"""

    def __init__(self, gate: SessionGate, session: TrustSession, route: str) -> None:
        self.id = uuid4().hex
        self._gate = gate
        self._session = session
        self._route = route
        self._listeners: list[Callable[[SessionDecision], None]] = []
        self._queue: asyncio.Queue[SessionDecision | None] = asyncio.Queue()
        self._trigger = asyncio.Event()
        self._generation = 0
        self._last: SessionDecision | None = None
        self._tasks: list[asyncio.Task] = []
        self._subscription = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.evaluations = 0
        self.stopped = False

    @property
    def last_decision(self) -> SessionDecision | None:
        return self._last

    @property
    def route(self) -> str:
        return self._route

    @property
    def user_id(self) -> UUID:
        return self._session.user_id

    def add_listener(self, listener: Callable[[SessionDecision], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self._gate.event_bus is not None:
            self._subscription = self._gate.event_bus.subscribe(
                self._session.user_id,
                [TrustTable.BANS, TrustTable.WARNINGS, TrustTable.SESSIONS],
                self._on_event,
            )
        self._tasks = [
            self._loop.create_task(self._run()),
            self._loop.create_task(self._poll()),
        ]
        self._trigger.set()

    def request_evaluation(self) -> None:
        if not self.stopped:
            self._trigger.set()

    def notify_acknowledged(self) -> None:
        """本地确认完成后立即重新判定。"""
        self._gate.warning_evaluator.forget(self._session.user_id)
        self.request_evaluation()

    def navigate(self, route: str) -> None:
        """切换路由，进行中的旧路由判定结果作废。"""
        self._route = route
        self._generation += 1
        self.request_evaluation()

    def stop(self) -> None:
        """会话结束：取消任务与订阅，进行中的判定不再产出结果。"""
        if self.stopped:
            return
        self.stopped = True
        self._generation += 1
        self._gate._release(self.id)
        if self._subscription is not None:
            self._subscription.close()
        for task in self._tasks:
            task.cancel()
        self._queue.put_nowait(None)

    async def aclose(self) -> None:
        self.stop()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def next_decision(self) -> SessionDecision | None:
        """等待下一次变化的判定；返回 None 表示已停止。"""
        if self.stopped and self._queue.empty():
            return None
        return await self._queue.get()

    async def decisions(self):
        """按变化顺序产出判定，停止后结束。"""
        while True:
            decision = await self.next_decision()
            if decision is None:
                return
            yield decision

    def _on_event(self, event: TrustChangeEvent) -> None:
        # 推送可能来自工作线程，统一切回所属事件循环处理。
        if self.stopped or self._loop is None or self._loop.is_closed():
            return
        if event.table == TrustTable.SESSIONS and event.action == SIGN_OUT_ACTION:
            self._loop.call_soon_threadsafe(self.stop)
            return
        self._loop.call_soon_threadsafe(self.request_evaluation)

    async def _poll(self) -> None:
        # 封禁到期没有推送，只能靠定时重新判定。
        interval = self._gate.settings.gate_poll_interval_seconds
        while not self.stopped:
            await asyncio.sleep(interval)
            self.request_evaluation()

    async def _run(self) -> None:
        while not self.stopped:
            await self._trigger.wait()
            self._trigger.clear()
            generation = self._generation
            self.evaluations += 1
            try:
                decision = await self._gate.evaluate(self._session, self._route)
            except Exception:
                logger.exception("gate evaluation crashed user_id=%s", self._session.user_id)
                decision = SessionDecision(kind=DecisionKind.LOADING, degraded=True)
            if self.stopped or generation != self._generation:
                continue
            self._emit(decision)

    def _emit(self, decision: SessionDecision) -> None:
        if decision == self._last:
            return
        self._last = decision
        self._queue.put_nowait(decision)
        for listener in list(self._listeners):
            try:
                listener(decision)
            except Exception:
                logger.exception("gate listener failed user_id=%s", self._session.user_id)


def build_session_gate(
    store: TrustStateStore,
    event_bus: TrustEventBus | None = None,
    settings: Settings | None = None,
) -> SessionGate:
    """按配置装配门禁：缓存有效期为一个轮询周期。"""
    settings = settings or get_settings()
    ban_evaluator = BanPolicyEvaluator(
        store,
        cache_ttl_seconds=settings.gate_poll_interval_seconds,
        fail_closed=settings.gate_fail_closed,
    )
    warning_evaluator = WarningPolicyEvaluator(
        store,
        cache_ttl_seconds=settings.gate_poll_interval_seconds,
        fail_closed=settings.gate_fail_closed,
    )
    return SessionGate(ban_evaluator, warning_evaluator, event_bus=event_bus, settings=settings)
