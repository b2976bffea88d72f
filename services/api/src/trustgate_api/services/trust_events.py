"""信任状态变更推送总线。

存储层写入提交后发布事件，订阅方按用户 ID 与表名过滤。
发布为同步调用，可能来自任意线程；订阅方需自行切回所属事件循环。
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from uuid import UUID, uuid4

logger = logging.getLogger("trustgate_api.events")


@dataclass(frozen=True)
class TrustChangeEvent:
    """单条信任记录变更通知。"""

    table: str
    user_id: UUID
    action: str
    record_id: UUID | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


TrustListener = Callable[[TrustChangeEvent], None]


class Subscription:
    """订阅句柄，close 后不再收到事件。"""

    def __init__(self, bus: "TrustEventBus", key: UUID) -> None:
        self._bus = bus
        self._key = key
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._remove(self._key)


class TrustEventBus:
    """进程级发布订阅。"""

    def __init__(self) -> None:
        self._lock = Lock()
        self._listeners: dict[UUID, tuple[UUID, frozenset[str], TrustListener]] = {}

    def subscribe(self, user_id: UUID, tables: Iterable[str], callback: TrustListener) -> Subscription:
        """订阅指定用户在指定表上的变更。"""
        key = uuid4()
        with self._lock:
            self._listeners[key] = (user_id, frozenset(str(table) for table in tables), callback)
        return Subscription(self, key)

    def publish(self, event: TrustChangeEvent) -> None:
        """向匹配的订阅方同步分发事件。"""
        with self._lock:
            targets = [
                callback
                for user_id, tables, callback in self._listeners.values()
                if user_id == event.user_id and event.table in tables
            ]
        for callback in targets:
            try:
                callback(event)
            except Exception:
                # 单个订阅方异常不影响其他订阅方。
                logger.exception("trust listener failed table=%s user_id=%s", event.table, event.user_id)

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _remove(self, key: UUID) -> None:
        with self._lock:
            self._listeners.pop(key, None)


_default_bus = TrustEventBus()


def get_event_bus() -> TrustEventBus:
    """返回进程级默认总线。"""
    return _default_bus
