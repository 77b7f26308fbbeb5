import logging
import os
import socket
from uuid import uuid4

import redis

logger = logging.getLogger(__name__)


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class RedisLease:
    """
    Cluster-wide single-holder lease on a Redis key.

    ``acquire`` takes the key with SET NX PX, or renews it if this holder
    already owns it. A holder that stops renewing loses the lease after
    ``ttl_ms``. The client must be created with ``decode_responses=True``.
    """

    KEY_PREFIX = "lease:"

    def __init__(self, redis_client: redis.Redis, name: str, ttl_ms: int = 5000, holder_id: str = None):
        self.redis = redis_client
        self.name = name
        self.key = f"{self.KEY_PREFIX}{name}"
        self.ttl_ms = ttl_ms
        self.holder_id = holder_id or default_holder_id()

    def acquire(self) -> bool:
        if self.redis.set(self.key, self.holder_id, nx=True, px=self.ttl_ms):
            logger.info(f"Lease {self.name} acquired by {self.holder_id}")
            return True
        return self._renew()

    def _renew(self) -> bool:
        with self.redis.pipeline() as pipe:
            try:
                pipe.watch(self.key)
                if pipe.get(self.key) != self.holder_id:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.pexpire(self.key, self.ttl_ms)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    def release(self) -> None:
        with self.redis.pipeline() as pipe:
            try:
                pipe.watch(self.key)
                if pipe.get(self.key) != self.holder_id:
                    pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(self.key)
                pipe.execute()
                logger.info(f"Lease {self.name} released by {self.holder_id}")
            except redis.WatchError:
                logger.info(f"Lease {self.name} changed hands during release")
