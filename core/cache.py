import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Optional

import redis

from core.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache
def get_redis_client() -> Optional[Any]:
    """
    Redis is only a first line of defence for duplicate fires,
    the conditional status update in the store is the last one.
    Return None when Redis cannot be reached.
    """
    try:
        # decode_responses=True returns str instead of bytes
        client = redis.from_url(get_settings().redis_url, decode_responses=True)
        if client.ping():
            return client
        raise redis.ConnectionError("Ping failed")
    except redis.RedisError as e:
        logger.warning(f"⚠️ [Redis] Connection failed, fire lock disabled: {e}")
        return None


class RedisFireLock:
    """Short-lived `SET NX` lock so two requests cannot send the same record."""

    def __init__(self, client: Optional[Any], ttl: int = 60) -> None:
        self.client = client
        self.ttl = ttl

    @staticmethod
    def key(record_id: int) -> str:
        return f"pixelfly:fire:{record_id}"

    def acquire(self, record_id: int) -> bool:
        if self.client is None:
            return True
        try:
            # key missing -> set, returns True -> we are first
            # key exists  -> returns None -> someone else is firing
            return bool(
                self.client.set(
                    self.key(record_id), "1", nx=True, ex=timedelta(seconds=self.ttl)
                )
            )
        except redis.RedisError as e:
            logger.warning(f"⚠️ [Redis] Lock unavailable for record {record_id}: {e}")
            return True

    def release(self, record_id: int) -> None:
        if self.client is None:
            return
        try:
            self.client.delete(self.key(record_id))
        except redis.RedisError as e:
            logger.warning(f"⚠️ [Redis] Could not release lock {record_id}: {e}")
