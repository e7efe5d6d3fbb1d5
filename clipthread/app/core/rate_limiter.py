import asyncio
import time


class TokenBucket:
    def __init__(self, capacity: int = 5, refill_rate: float = 0.5):
        """
        capacity: Max burst size (tokens).
        refill_rate: Tokens added per second.
        """
        self.capacity = float(capacity)
        self.refill_rate = refill_rate
        self._tokens = float(capacity)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self.last_refill = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def wait_for_token(self):
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait_seconds = (1.0 - self._tokens) / self.refill_rate

            # Sleep outside lock
            await asyncio.sleep(wait_seconds)
