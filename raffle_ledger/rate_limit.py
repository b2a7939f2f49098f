import time
from dataclasses import dataclass

BUCKET_TTL_SECONDS = 3600


@dataclass
class Decision:
    allowed: bool
    retry_after: float = 0.0


async def take(redis, key: str, per_minute: int, cost: float = 1.0) -> Decision:
    """Token bucket holding `per_minute` tokens, refilled continuously."""
    now = time.time()
    refill = per_minute / 60
    bucket_key = f"rl:{key}"

    state = await redis.hgetall(bucket_key)
    elapsed = now - float(state.get("last", now))
    tokens = min(per_minute, float(state.get("tokens", per_minute)) + elapsed * refill)

    allowed = tokens >= cost
    if allowed:
        tokens -= cost
    await redis.hset(bucket_key, mapping={"tokens": tokens, "last": now})
    await redis.expire(bucket_key, BUCKET_TTL_SECONDS)

    if allowed:
        return Decision(True)
    return Decision(False, retry_after=round((cost - tokens) / refill, 1))
