"""警告确认判定。"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from uuid import UUID

from trustgate_api.core.errors import StoreUnavailable
from trustgate_api.models.enums import WarningState
from trustgate_api.services.trust_store import TrustStateStore, WarningRecord

logger = logging.getLogger("trustgate_api.gate.warning")


class InvalidWarningTransition(ValueError):
    """警告确认状态只能单向前进。"""


def advance_warning_state(current: WarningState, target: WarningState) -> WarningState:
    """校验单条警告的状态迁移：PENDING -> ACKNOWLEDGED，不允许回退。"""
    if current == target:
        return current
    if current == WarningState.PENDING and target == WarningState.ACKNOWLEDGED:
        return target
    raise InvalidWarningTransition(f"cannot move warning from {current} to {target}")


@dataclass(frozen=True)
class WarningStatus:
    """未确认警告列表，按创建时间倒序。"""

    warnings: tuple[WarningRecord, ...] = field(default_factory=tuple)
    degraded: bool = False

    @property
    def has_unacknowledged(self) -> bool:
        return bool(self.warnings)

    @property
    def current(self) -> WarningRecord | None:
        """逐条展示时当前应展示的警告。"""
        return self.warnings[0] if self.warnings else None


NO_WARNINGS = WarningStatus()


class WarningPolicyEvaluator:
    """判断用户是否存在未确认的警告，并处理确认动作。"""

    def __init__(
        self,
        store: TrustStateStore,
        *,
        cache_ttl_seconds: float = 10.0,
        fail_closed: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._cache_ttl_seconds = cache_ttl_seconds
        self._fail_closed = fail_closed
        self._clock = clock
        self._lock = Lock()
        self._last_known: OrderedDict[UUID, tuple[float, WarningStatus]] = OrderedDict()

    def evaluate(self, user_id: UUID | None) -> WarningStatus:
        if user_id is None:
            return NO_WARNINGS
        try:
            records = self._store.list_unacknowledged_warnings(user_id)
        except StoreUnavailable:
            return self._fallback(user_id)
        status = WarningStatus(warnings=tuple(records))
        self._remember(user_id, status)
        return status

    def acknowledge(self, user_id: UUID, warning_id: UUID, now: datetime | None = None) -> bool:
        """确认单条警告。

        已确认、不存在或不属于当前用户的警告视为无事可做，返回 False。
        存储不可用时向上抛出 StoreUnavailable，由调用方提示重试。
        """
        record = self._store.get_warning(warning_id)
        if record is None or record.user_id != user_id:
            logger.info("warning acknowledge no-op user_id=%s warning_id=%s", user_id, warning_id)
            return False
        if advance_warning_state(record.state, WarningState.ACKNOWLEDGED) == record.state:
            return False
        # 条件更新兜住并发确认，只有一次会真正写入。
        changed = self._store.acknowledge_warning(user_id=user_id, warning_id=warning_id, now=now)
        if changed:
            logger.info("warning acknowledged user_id=%s warning_id=%s", user_id, warning_id)
            # 确认后立即以实时结果为准。
            self.forget(user_id)
        else:
            logger.info("warning acknowledge no-op user_id=%s warning_id=%s", user_id, warning_id)
        return changed

    def forget(self, user_id: UUID) -> None:
        with self._lock:
            self._last_known.pop(user_id, None)

    def _remember(self, user_id: UUID, status: WarningStatus) -> None:
        fetched_at = self._clock()
        with self._lock:
            self._last_known[user_id] = (fetched_at, status)
            self._last_known.move_to_end(user_id)
            while self._last_known:
                oldest_at, _ = next(iter(self._last_known.values()))
                if fetched_at - oldest_at <= self._cache_ttl_seconds:
                    break
                self._last_known.popitem(last=False)

    def cache_size(self) -> int:
        with self._lock:
            return len(self._last_known)

    def _fallback(self, user_id: UUID) -> WarningStatus:
        with self._lock:
            cached = self._last_known.get(user_id)
        if cached is not None:
            fetched_at, status = cached
            if self._clock() - fetched_at <= self._cache_ttl_seconds:
                logger.warning("warning check degraded, using last known status user_id=%s", user_id)
                return WarningStatus(warnings=status.warnings, degraded=True)
        if self._fail_closed:
            raise StoreUnavailable()
        logger.error("warning check failed, defaulting to no warnings user_id=%s", user_id)
        return WarningStatus(degraded=True)
