"""Degraded-mode session tracking used while the primary store is unreachable.

Two scopes are available, selected by ``Settings.fallback_scope``:

- ``InMemoryFallbackTracker``: per-process budget, discarded on restart. Each
  instance behind a load balancer grants its own ``fallback_limit``.
- ``RedisFallbackTracker``: one budget shared by every instance, counted with
  ``HINCRBY`` so concurrent instances cannot exceed it by more than one
  in-flight check each.

Both keep a bounded replay queue of fallback usage. When the queue is full the
oldest entry is dropped and counted in ``dropped``; the newest usage is what
replay should preserve if anything has to go.

Neither is authoritative. Once the store is healthy again the replay worker
moves queued usage into durable counters and the session counts only matter
for the next outage.
"""

import json
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis

from toolmeter.entitlements.plans import PlanType

logger = structlog.get_logger(__name__)

# Redis key templates (shared scope)
_USAGE_KEY = "toolmeter:fallback:usage:{user_id}"
_QUEUE_KEY = "toolmeter:fallback:queue"
_DROPPED_KEY = "toolmeter:fallback:dropped"

# Session counters self-expire so a long-dead outage does not pin a user's budget
_USAGE_TTL = 86_400  # seconds


@dataclass(frozen=True)
class QueuedUsage:
    user_id: str
    tool_name: str
    occurred_at: datetime

    def to_json(self) -> str:
        return json.dumps({
            "user_id": self.user_id,
            "tool_name": self.tool_name,
            "occurred_at": self.occurred_at.isoformat(),
        })

    @classmethod
    def from_json(cls, raw: str) -> "QueuedUsage":
        data = json.loads(raw)
        return cls(
            user_id=data["user_id"],
            tool_name=data["tool_name"],
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
        )


@dataclass(frozen=True)
class FallbackDecision:
    can_use: bool
    remaining: int


class InMemoryFallbackTracker:
    """Process-local degraded-mode counters and replay queue."""

    def __init__(self, limit: int = 3, queue_max: int = 1000):
        self.limit = limit
        self.queue_max = queue_max
        self.dropped = 0
        self._usage: dict[str, dict[str, int]] = {}
        self._queue: deque[QueuedUsage] = deque()

    async def check_fallback(self, user_id: str, tool_name: str) -> FallbackDecision:
        used = self._usage.get(user_id, {}).get(tool_name, 0)
        return FallbackDecision(can_use=used < self.limit, remaining=max(0, self.limit - used))

    async def increment_fallback(
        self, user_id: str, tool_name: str, now: datetime | None = None
    ) -> int:
        """Count one degraded-mode use and queue it for replay. Returns the session count."""
        tools = self._usage.setdefault(user_id, {})
        tools[tool_name] = tools.get(tool_name, 0) + 1

        if len(self._queue) >= self.queue_max:
            self._queue.popleft()
            self._record_drop(1)
        self._queue.append(QueuedUsage(user_id, tool_name, now or datetime.now(UTC)))
        return tools[tool_name]

    async def drain_queue(self) -> list[QueuedUsage]:
        items = list(self._queue)
        self._queue.clear()
        return items

    async def requeue(self, items: list[QueuedUsage]) -> None:
        """Put unreplayed items back ahead of anything queued since the drain."""
        combined = list(items) + list(self._queue)
        overflow = len(combined) - self.queue_max
        if overflow > 0:
            combined = combined[overflow:]
            self._record_drop(overflow)
        self._queue = deque(combined)

    async def clear(self, user_id: str) -> None:
        self._usage.pop(user_id, None)

    async def usage_for(self, user_id: str) -> dict[str, int]:
        return dict(self._usage.get(user_id, {}))

    async def queue_depth(self) -> int:
        return len(self._queue)

    def _record_drop(self, count: int) -> None:
        self.dropped += count
        logger.warning("fallback_queue_overflow", dropped=count, dropped_total=self.dropped)


class RedisFallbackTracker:
    """Degraded-mode counters shared across instances through Redis."""

    def __init__(self, redis: Redis, limit: int = 3, queue_max: int = 1000):
        self.redis = redis
        self.limit = limit
        self.queue_max = queue_max
        # Cluster-wide total as last seen by this instance
        self.dropped = 0

    async def check_fallback(self, user_id: str, tool_name: str) -> FallbackDecision:
        raw = await self.redis.hget(_USAGE_KEY.format(user_id=user_id), tool_name)
        used = int(raw) if raw else 0
        return FallbackDecision(can_use=used < self.limit, remaining=max(0, self.limit - used))

    async def increment_fallback(
        self, user_id: str, tool_name: str, now: datetime | None = None
    ) -> int:
        key = _USAGE_KEY.format(user_id=user_id)
        count = await self.redis.hincrby(key, tool_name, 1)
        await self.redis.expire(key, _USAGE_TTL)

        item = QueuedUsage(user_id, tool_name, now or datetime.now(UTC))
        length = await self.redis.rpush(_QUEUE_KEY, item.to_json())
        if length > self.queue_max:
            await self._trim(length - self.queue_max)
        return count

    async def drain_queue(self) -> list[QueuedUsage]:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrange(_QUEUE_KEY, 0, -1)
            pipe.delete(_QUEUE_KEY)
            raw_items, _ = await pipe.execute()
        return [QueuedUsage.from_json(raw) for raw in raw_items]

    async def requeue(self, items: list[QueuedUsage]) -> None:
        if not items:
            return
        # LPUSH reverses its arguments, so push newest-first to keep original order
        length = await self.redis.lpush(_QUEUE_KEY, *[item.to_json() for item in reversed(items)])
        if length > self.queue_max:
            await self._trim(length - self.queue_max)

    async def clear(self, user_id: str) -> None:
        await self.redis.delete(_USAGE_KEY.format(user_id=user_id))

    async def usage_for(self, user_id: str) -> dict[str, int]:
        raw = await self.redis.hgetall(_USAGE_KEY.format(user_id=user_id))
        return {tool: int(count) for tool, count in raw.items()}

    async def queue_depth(self) -> int:
        return await self.redis.llen(_QUEUE_KEY)

    async def _trim(self, overflow: int) -> None:
        await self.redis.ltrim(_QUEUE_KEY, overflow, -1)
        total = await self.redis.incrby(_DROPPED_KEY, overflow)
        self.dropped = total
        logger.warning("fallback_queue_overflow", dropped=overflow, dropped_total=total, scope="redis")


class FallbackPlanCache:
    """Bounded LRU of last-known plans, consulted only when the store is unreachable."""

    def __init__(self, max_size: int = 10_000):
        self.max_size = max_size
        self._plans: OrderedDict[str, PlanType] = OrderedDict()

    def get(self, user_id: str) -> PlanType:
        plan = self._plans.get(user_id)
        if plan is None:
            return PlanType.FREE
        self._plans.move_to_end(user_id)
        return plan

    def set(self, user_id: str, plan: PlanType) -> None:
        self._plans[user_id] = plan
        self._plans.move_to_end(user_id)
        while len(self._plans) > self.max_size:
            self._plans.popitem(last=False)

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._plans
