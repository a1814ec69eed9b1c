"""
Per-tenant, per-capability usage windows.

Windows are calendar-aligned in UTC (minute floor, day floor, month start).
check_and_increment is atomic across every window configured for a capability:
either all of them are incremented or none is, so a denial never leaves a
partial count behind.

Locking granularity is (tenant, capability). Nothing is held across tenants.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from ledgerline.config import settings
from ledgerline.errors import QuotaExceededError, StorageError
from ledgerline.models.enums import QuotaGranularity
from ledgerline.observability.metrics import quota_denials_total
from ledgerline.schemas.quota import QuotaDecision, QuotaWindow

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
Limits = dict[QuotaGranularity, int]

# Longest window first: when several are exhausted the first hit has the latest reset.
GRANULARITY_ORDER = [QuotaGranularity.MONTH, QuotaGranularity.DAY, QuotaGranularity.MINUTE]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def window_bounds(granularity: QuotaGranularity, now: datetime) -> tuple[datetime, datetime]:
    """Calendar-aligned [start, end) containing now."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)

    if granularity == QuotaGranularity.MINUTE:
        start = now.replace(second=0, microsecond=0)
        return start, start + timedelta(minutes=1)
    if granularity == QuotaGranularity.DAY:
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1)

    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def parse_limits(raw: dict[str, dict[str, int]]) -> dict[str, Limits]:
    """Convert the QUOTA_LIMITS setting into typed, ordered limits."""
    parsed: dict[str, Limits] = {}
    for capability, by_granularity in raw.items():
        limits = {QuotaGranularity(g): int(limit) for g, limit in by_granularity.items()}
        parsed[capability] = {g: limits[g] for g in GRANULARITY_ORDER if g in limits}
    return parsed


def _denied(tenant_id: str, capability: str, window: QuotaWindow, windows: list[QuotaWindow]) -> QuotaDecision:
    return QuotaDecision(
        allowed=False,
        tenant_id=tenant_id,
        capability=capability,
        windows=windows,
        exhausted_granularity=window.granularity,
        reset_at=window.window_end,
    )


# ── Stores ───────────────────────────────────────────────────

class QuotaStore(ABC):
    """Keyed counter store. Implementations must make check_and_increment atomic."""

    @abstractmethod
    async def check_and_increment(
        self, tenant_id: str, capability: str, limits: Limits, now: datetime
    ) -> QuotaDecision:
        ...

    @abstractmethod
    async def windows(
        self, tenant_id: str, capability: str, limits: Limits, now: datetime
    ) -> list[QuotaWindow]:
        ...

    async def close(self) -> None:
        return None


class InMemoryQuotaStore(QuotaStore):
    """Process-local store with one asyncio.Lock per (tenant, capability)."""

    def __init__(self):
        self._windows: dict[tuple[str, str, QuotaGranularity], QuotaWindow] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock(self, tenant_id: str, capability: str) -> asyncio.Lock:
        return self._locks.setdefault((tenant_id, capability), asyncio.Lock())

    def _current(
        self, tenant_id: str, capability: str, granularity: QuotaGranularity, limit: int, now: datetime
    ) -> QuotaWindow:
        """Active window, rolled over to a fresh one if expired."""
        key = (tenant_id, capability, granularity)
        window = self._windows.get(key)
        if window is None or not window.is_active(now) or window.limit != limit:
            start, end = window_bounds(granularity, now)
            used = window.used if window is not None and window.is_active(now) else 0
            window = QuotaWindow(
                tenant_id=tenant_id,
                capability=capability,
                granularity=granularity,
                window_start=start,
                window_end=end,
                limit=limit,
                used=used,
            )
            self._windows[key] = window
        return window

    async def check_and_increment(
        self, tenant_id: str, capability: str, limits: Limits, now: datetime
    ) -> QuotaDecision:
        async with self._lock(tenant_id, capability):
            windows = [self._current(tenant_id, capability, g, limit, now) for g, limit in limits.items()]
            for window in windows:
                if window.used >= window.limit:
                    return _denied(tenant_id, capability, window, [w.model_copy() for w in windows])
            for window in windows:
                window.used += 1
            return QuotaDecision(
                allowed=True,
                tenant_id=tenant_id,
                capability=capability,
                windows=[w.model_copy() for w in windows],
            )

    async def windows(
        self, tenant_id: str, capability: str, limits: Limits, now: datetime
    ) -> list[QuotaWindow]:
        async with self._lock(tenant_id, capability):
            return [
                self._current(tenant_id, capability, g, limit, now).model_copy()
                for g, limit in limits.items()
            ]


# Checks every window first, then increments all of them. Runs atomically on the server.
# KEYS: window keys. ARGV: limits (n), then expire-at epoch seconds (n).
_CHECK_AND_INCREMENT_LUA = """
local n = #KEYS
for i = 1, n do
  local used = tonumber(redis.call('GET', KEYS[i]) or '0')
  if used >= tonumber(ARGV[i]) then
    return {0, i, used}
  end
end
local out = {1}
for i = 1, n do
  local used = redis.call('INCR', KEYS[i])
  redis.call('EXPIREAT', KEYS[i], ARGV[n + i])
  table.insert(out, used)
end
return out
"""


class RedisQuotaStore(QuotaStore):
    """Shared store for multi-process deployments. One Lua script per check."""

    def __init__(self, url: Optional[str] = None, prefix: Optional[str] = None, client=None):
        if client is None:
            import redis.asyncio as aioredis

            client = aioredis.Redis.from_url(url or settings.REDIS_URL)
        self._redis = client
        self._prefix = prefix or settings.REDIS_KEY_PREFIX
        self._script = self._redis.register_script(_CHECK_AND_INCREMENT_LUA)

    def _key(self, tenant_id: str, capability: str, granularity: QuotaGranularity, start: datetime) -> str:
        # Hash tag keeps a capability's windows in one cluster slot for the script.
        return f"{self._prefix}:quota:{{{tenant_id}:{capability}}}:{granularity.value}:{int(start.timestamp())}"

    def _layout(self, tenant_id: str, capability: str, limits: Limits, now: datetime):
        keys, windows = [], []
        for granularity, limit in limits.items():
            start, end = window_bounds(granularity, now)
            keys.append(self._key(tenant_id, capability, granularity, start))
            windows.append(QuotaWindow(
                tenant_id=tenant_id,
                capability=capability,
                granularity=granularity,
                window_start=start,
                window_end=end,
                limit=limit,
            ))
        return keys, windows

    async def check_and_increment(
        self, tenant_id: str, capability: str, limits: Limits, now: datetime
    ) -> QuotaDecision:
        from redis.exceptions import RedisError

        keys, windows = self._layout(tenant_id, capability, limits, now)
        args = [w.limit for w in windows] + [int(w.window_end.timestamp()) for w in windows]
        try:
            reply = await self._script(keys=keys, args=args)
        except RedisError as e:
            raise StorageError(f"quota store unavailable: {e}") from e

        if int(reply[0]) == 0:
            blocked = windows[int(reply[1]) - 1]
            blocked.used = int(reply[2])
            return _denied(tenant_id, capability, blocked, windows)

        for window, used in zip(windows, reply[1:]):
            window.used = int(used)
        return QuotaDecision(allowed=True, tenant_id=tenant_id, capability=capability, windows=windows)

    async def windows(
        self, tenant_id: str, capability: str, limits: Limits, now: datetime
    ) -> list[QuotaWindow]:
        from redis.exceptions import RedisError

        keys, windows = self._layout(tenant_id, capability, limits, now)
        if not keys:
            return []
        try:
            values = await self._redis.mget(keys)
        except RedisError as e:
            raise StorageError(f"quota store unavailable: {e}") from e
        for window, value in zip(windows, values):
            window.used = int(value or 0)
        return windows

    async def close(self) -> None:
        await self._redis.aclose()


# ── Manager ──────────────────────────────────────────────────

class QuotaManager:
    """
    Enforces QUOTA_LIMITS per tenant.
    Capabilities without configured limits are unlimited.
    """

    def __init__(
        self,
        store: Optional[QuotaStore] = None,
        limits: Optional[dict[str, dict[str, int]]] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store or InMemoryQuotaStore()
        self.limits = parse_limits(limits if limits is not None else settings.QUOTA_LIMITS)
        self.clock = clock or utc_now

    def limits_for(self, capability: str) -> Limits:
        return self.limits.get(capability, {})

    async def check_and_increment(self, tenant_id: str, capability: str) -> QuotaDecision:
        limits = self.limits_for(capability)
        if not limits:
            return QuotaDecision(allowed=True, tenant_id=tenant_id, capability=capability)

        decision = await self.store.check_and_increment(tenant_id, capability, limits, self.clock())
        if not decision.allowed:
            quota_denials_total.labels(
                capability=capability, granularity=decision.exhausted_granularity.value
            ).inc()
            logger.info(
                "quota_denied",
                tenant_id=tenant_id,
                capability=capability,
                granularity=decision.exhausted_granularity.value,
                reset_at=decision.reset_at.isoformat(),
            )
        return decision

    async def require(self, tenant_id: str, capability: str) -> QuotaDecision:
        """check_and_increment that raises QuotaExceededError on denial."""
        decision = await self.check_and_increment(tenant_id, capability)
        if not decision.allowed:
            limit = limits_value(self.limits_for(capability), decision.exhausted_granularity)
            raise QuotaExceededError(tenant_id, capability, decision.reset_at, limit)
        return decision

    async def usage(self, tenant_id: str, capability: str) -> list[QuotaWindow]:
        limits = self.limits_for(capability)
        if not limits:
            return []
        return await self.store.windows(tenant_id, capability, limits, self.clock())

    async def close(self) -> None:
        await self.store.close()


def limits_value(limits: Limits, granularity: Optional[QuotaGranularity]) -> Optional[int]:
    return limits.get(granularity) if granularity is not None else None
