import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List, Mapping, Optional, Protocol, Set

import redis
from fastapi import Response

logger = logging.getLogger(__name__)

MARKER_MAX_AGE = 365 * 24 * 60 * 60


@dataclass
class RequestContext:
    """Orders already fired while serving the current request."""

    processed: Set[int] = field(default_factory=set)

    def already_processed(self, order_id: int) -> bool:
        return order_id in self.processed

    def mark(self, order_id: int) -> None:
        self.processed.add(order_id)


def purchase_key(order_id: int) -> str:
    return f"pixelfly_purchase_{order_id}"


class MarkerBackend(Protocol):
    def has(self, key: str) -> bool: ...

    def mark(self, key: str) -> None: ...


class RedisMarkerBackend:
    def __init__(self, client: Optional[Any]) -> None:
        self.client = client

    def has(self, key: str) -> bool:
        if self.client is None:
            return False
        return bool(self.client.exists(key))

    def mark(self, key: str) -> None:
        if self.client is None:
            return
        self.client.set(key, "1", ex=timedelta(seconds=MARKER_MAX_AGE))


class CookieMarkerBackend:
    def __init__(self, cookies: Mapping[str, str], response: Response) -> None:
        self.cookies = cookies
        self.response = response

    def has(self, key: str) -> bool:
        return self.cookies.get(key) == "1"

    def mark(self, key: str) -> None:
        self.response.set_cookie(
            key, "1", max_age=MARKER_MAX_AGE, path="/", samesite="lax"
        )


class PurchaseMarker:
    """
    Best-effort guard against the thank-you page pushing the same purchase
    into the dataLayer twice. Server-side order flags stay authoritative.
    """

    def __init__(self, backends: List[MarkerBackend]) -> None:
        self.backends = backends

    def is_tracked(self, order_id: int) -> bool:
        key = purchase_key(order_id)
        for backend in self.backends:
            try:
                if backend.has(key):
                    return True
            except redis.RedisError as e:
                logger.warning(f"⚠️ [Marker] {type(backend).__name__} unavailable: {e}")
        return False

    def mark_tracked(self, order_id: int) -> None:
        key = purchase_key(order_id)
        for backend in self.backends:
            try:
                backend.mark(key)
            except redis.RedisError as e:
                logger.warning(f"⚠️ [Marker] {type(backend).__name__} unavailable: {e}")

    def check_and_mark(self, order_id: int) -> bool:
        """Return True when the caller should push the purchase event."""
        if self.is_tracked(order_id):
            logger.info(f" ♻️ [Marker] Purchase {order_id} already pushed. Skipping.")
            return False
        self.mark_tracked(order_id)
        return True
