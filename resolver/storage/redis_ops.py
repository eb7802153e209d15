from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from redis.asyncio.client import Redis

from resolver.common import log_event
from resolver.settlement.types import OPEN_STATUSES, TERMINAL_STATUSES, Order, OrderStatus

from .helpers import epoch_score as _epoch_score
from .helpers import now_iso as _now_iso
from .helpers import serialize_for_redis as _serialize_for_redis

# KEYS: order hash, open index, expiry index
# ARGV: order_hash, created score, expires score, is_open, field/value pairs...
SAVE_ORDER_SCRIPT = """
if redis.call('exists', KEYS[1]) == 1 then
  return 0
end
for i = 5, #ARGV, 2 do
  redis.call('hset', KEYS[1], ARGV[i], ARGV[i + 1])
end
if ARGV[4] == '1' then
  redis.call('zadd', KEYS[2], ARGV[2], ARGV[1])
  redis.call('zadd', KEYS[3], ARGV[3], ARGV[1])
end
return 1
"""

# KEYS: order hash, open index, expiry index
# ARGV: order_hash, to_status, updated_at, leaves_open_set, from count, from statuses..., field/value pairs...
TRANSITION_STATUS_SCRIPT = """
local current = redis.call('hget', KEYS[1], 'status')
if not current then
  return 0
end
local from_count = tonumber(ARGV[5])
local allowed = false
for i = 1, from_count do
  if ARGV[5 + i] == current then
    allowed = true
  end
end
if not allowed then
  return 0
end
redis.call('hset', KEYS[1], 'status', ARGV[2], 'updated_at', ARGV[3])
for i = 6 + from_count, #ARGV, 2 do
  redis.call('hset', KEYS[1], ARGV[i], ARGV[i + 1])
end
if ARGV[4] == '1' then
  redis.call('zrem', KEYS[2], ARGV[1])
  redis.call('zrem', KEYS[3], ARGV[1])
end
return 1
"""

# KEYS: expiry index, open index
# ARGV: now score, order key prefix, updated_at, open statuses...
SWEEP_EXPIRED_SCRIPT = """
local due = redis.call('zrangebyscore', KEYS[1], '-inf', '(' .. ARGV[1])
local expired = 0
for _, order_hash in ipairs(due) do
  local order_key = ARGV[2] .. ':' .. order_hash
  local status = redis.call('hget', order_key, 'status')
  local is_open = false
  for i = 4, #ARGV do
    if ARGV[i] == status then
      is_open = true
    end
  end
  if is_open then
    redis.call('hset', order_key, 'status', 'expired', 'updated_at', ARGV[3])
    expired = expired + 1
  end
  redis.call('zrem', KEYS[1], order_hash)
  redis.call('zrem', KEYS[2], order_hash)
end
return expired
"""

VALID_STATUSES = frozenset(status.value for status in OrderStatus)


class RedisStorageOps:
    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        redis_client = self._require_redis()

        mapping = {str(key): _serialize_for_redis(value) for key, value in config.items()}
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.delete(self.settings.redis_config_key)
        if mapping:
            pipeline.hset(self.settings.redis_config_key, mapping=mapping)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config synced to Redis",
            items=len(mapping),
            source=source,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        redis_client = self._require_redis()
        return await redis_client.hgetall(self.settings.redis_config_key)

    async def save_order(self, order: Order) -> bool:
        redis_client = self._require_redis()
        args: list[str] = [
            order.order_hash,
            _epoch_score(order.created_at),
            _epoch_score(order.expires_at),
            "1" if order.is_open else "0",
        ]
        for key, value in order.to_record().items():
            args.extend((key, value))

        created = await redis_client.eval(
            SAVE_ORDER_SCRIPT,
            3,
            self.settings.order_key(order.order_hash),
            self.settings.open_index_key,
            self.settings.expiry_index_key,
            *args,
        )
        return bool(created)

    async def get_order(self, order_hash: str) -> Order | None:
        redis_client = self._require_redis()
        record = await redis_client.hgetall(self.settings.order_key(order_hash))
        if not record:
            return None
        return Order.from_record(record)

    async def get_executable_orders(self, now: datetime) -> list[Order]:
        redis_client = self._require_redis()
        order_hashes = await redis_client.zrange(self.settings.open_index_key, 0, -1)
        if not order_hashes:
            return []

        pipeline = redis_client.pipeline(transaction=False)
        for order_hash in order_hashes:
            pipeline.hgetall(self.settings.order_key(order_hash))
        records = await pipeline.execute()

        orders: list[Order] = []
        for order_hash, record in zip(order_hashes, records):
            if not record:
                continue
            try:
                order = Order.from_record(record)
            except (KeyError, TypeError, ValueError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="order_record_invalid",
                    message="Skipping unreadable order record",
                    order_hash=order_hash,
                    error=str(error),
                )
                continue
            if order.status in OPEN_STATUSES and order.expires_at > now:
                orders.append(order)
        return orders

    async def transition_status(
        self,
        order_hash: str,
        from_statuses: Sequence[str],
        to_status: str,
        extra: dict[str, Any] | None = None,
    ) -> int:
        from_values = [str(getattr(status, "value", status)) for status in from_statuses]
        to_value = str(getattr(to_status, "value", to_status))
        if to_value not in VALID_STATUSES:
            raise ValueError(f"Unknown order status: {to_value}")
        if not from_values:
            raise ValueError("from_statuses must not be empty.")
        terminal_sources = TERMINAL_STATUSES.intersection(from_values)
        if terminal_sources:
            raise ValueError(f"Terminal statuses cannot be transitioned: {sorted(terminal_sources)}")

        reserved = {"status", "updated_at", "order_hash"}
        args: list[str] = [
            order_hash,
            to_value,
            _now_iso(),
            "0" if to_value in OPEN_STATUSES else "1",
            str(len(from_values)),
            *from_values,
        ]
        for key, value in (extra or {}).items():
            if key in reserved:
                continue
            args.extend((str(key), _serialize_for_redis(value)))

        redis_client = self._require_redis()
        updated = await redis_client.eval(
            TRANSITION_STATUS_SCRIPT,
            3,
            self.settings.order_key(order_hash),
            self.settings.open_index_key,
            self.settings.expiry_index_key,
            *args,
        )
        return int(updated or 0)

    async def sweep_expired(self, now: datetime) -> int:
        redis_client = self._require_redis()
        expired = await redis_client.eval(
            SWEEP_EXPIRED_SCRIPT,
            2,
            self.settings.expiry_index_key,
            self.settings.open_index_key,
            _epoch_score(now),
            self.settings.order_prefix,
            _now_iso(),
            *sorted(OPEN_STATUSES),
        )
        return int(expired or 0)

    async def update_heartbeat(self) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self.settings.heartbeat_key, _now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
