"""封禁判定。"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock
from uuid import UUID

from trustgate_api.core.errors import StoreUnavailable
from trustgate_api.services.trust_store import TrustStateStore
from trustgate_api.utils.time import utc_now

logger = logging.getLogger("trustgate_api.gate.ban")


@dataclass(frozen=True)
class BanStatus:
    """封禁判定结果。"""

    is_banned: bool
    reason: str | None = None
    expires_at: datetime | None = None
    # 本次结果来自缓存或默认放行，而非实时读取。
    degraded: bool = False


NOT_BANNED = BanStatus(is_banned=False)


class BanPolicyEvaluator:
    """根据最近一条未解封记录判断用户是否处于封禁中。

    纯读操作，可按固定间隔反复调用以捕获自然过期。
    存储不可用时优先回退到一个轮询周期内的上次结果。
    """

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
        self._last_known: OrderedDict[UUID, tuple[float, BanStatus]] = OrderedDict()

    def evaluate(self, user_id: UUID | None, now: datetime | None = None) -> BanStatus:
        if user_id is None:
            return NOT_BANNED
        now = now or utc_now()
        try:
            record = self._store.latest_active_ban(user_id)
        except StoreUnavailable:
            return self._fallback(user_id, now)

        if record is None:
            status = NOT_BANNED
        else:
            # 过期判定：expires_at < now 视为已过期。
            is_expired = record.expires_at is not None and record.expires_at < now
            if is_expired:
                status = NOT_BANNED
            else:
                status = BanStatus(is_banned=True, reason=record.reason, expires_at=record.expires_at)

        self._remember(user_id, status)
        return status

    def forget(self, user_id: UUID) -> None:
        """会话结束时丢弃该用户的缓存。"""
        with self._lock:
            self._last_known.pop(user_id, None)

    def _remember(self, user_id: UUID, status: BanStatus) -> None:
        fetched_at = self._clock()
        with self._lock:
            self._last_known[user_id] = (fetched_at, status)
            self._last_known.move_to_end(user_id)
            # 按写入先后排列，过期条目都在队首。
            while self._last_known:
                oldest_at, _ = next(iter(self._last_known.values()))
                if fetched_at - oldest_at <= self._cache_ttl_seconds:
                    break
                self._last_known.popitem(last=False)

    def cache_size(self) -> int:
        with self._lock:
            return len(self._last_known)

    def _fallback(self, user_id: UUID, now: datetime) -> BanStatus:
        with self._lock:
            cached = self._last_known.get(user_id)
        if cached is not None:
            fetched_at, status = cached
            if self._clock() - fetched_at <= self._cache_ttl_seconds:
                logger.warning("ban check degraded, using last known status user_id=%s", user_id)
                if status.expires_at is not None and status.expires_at < now:
                    return replace(NOT_BANNED, degraded=True)
                return replace(status, degraded=True)
        if self._fail_closed:
            raise StoreUnavailable()
        logger.error("ban check failed, defaulting to not banned user_id=%s", user_id)
        return replace(NOT_BANNED, degraded=True)
