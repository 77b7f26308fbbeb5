from typing import Optional

from aiolimiter import AsyncLimiter


class TokenBucket:
    """
    Global admission control for new checkouts (based on aiolimiter.AsyncLimiter).

    Args:
        rate: tokens added per second
        capacity: bucket size (defaults to rate)
    """

    def __init__(self, rate: float, capacity: Optional[float] = None):
        self.rate = rate
        self.capacity = capacity or rate
        # A full bucket drains at ``rate`` tokens per second.
        self._limiter = AsyncLimiter(max_rate=self.capacity, time_period=self.capacity / rate)

    async def try_acquire(self, tokens: float = 1) -> bool:
        """Take tokens without waiting; False when the bucket is short."""
        if not self._limiter.has_capacity(tokens):
            return False
        await self._limiter.acquire(tokens)
        return True
