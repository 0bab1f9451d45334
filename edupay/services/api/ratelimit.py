"""Per-buyer Redis token bucket guarding intent creation."""

from time import time

from fastapi import HTTPException

from edupay.common.logging import logger


class TokenBucket:
    """Capacity and refill rate both equal `limit_per_minute`."""

    def __init__(self, client, limit_per_minute: int, prefix: str = "tokenbucket:intents") -> None:
        self.client = client
        self.capacity = float(limit_per_minute)
        self.refill_per_sec = self.capacity / 60.0
        self.prefix = prefix

    def consume(self, buyer_id: str) -> None:
        key = f"{self.prefix}:{buyer_id}"
        now = time()
        values = self.client.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else self.capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(self.capacity, tokens + elapsed * self.refill_per_sec)

        if tokens < 1.0:
            self.client.hset(key, mapping={"tokens": tokens, "updated_at": now})
            self.client.expire(key, 120)
            logger.info("intent rate limited buyer_id=%s", buyer_id)
            raise HTTPException(status_code=429, detail="rate limit exceeded")
        tokens -= 1.0
        self.client.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.client.expire(key, 120)
