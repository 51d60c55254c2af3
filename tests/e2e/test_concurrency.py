import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import Engine

from core.cache import RedisFireLock
from core.config import Settings
from core.database import init_db, make_engine
from domains.tracking.dispatcher import DelayedDispatcher, FireOutcome
from domains.tracking.model import STATUS_FIRED
from domains.tracking.schemas import DispatchResult, Order
from domains.tracking.store import EventStore

CONCURRENCY_LEVEL = 8  # duplicate webhook deliveries arriving together


class LockingRedis:
    """Just enough of redis SET NX / DELETE, atomic across threads."""

    def __init__(self) -> None:
        self._keys: Dict[str, Any] = {}
        self._mutex = threading.Lock()

    def set(
        self, key: str, value: Any, nx: bool = False, ex: Optional[timedelta] = None
    ) -> Optional[bool]:
        with self._mutex:
            if nx and key in self._keys:
                return None
            self._keys[key] = value
            return True

    def delete(self, key: str) -> int:
        with self._mutex:
            return 1 if self._keys.pop(key, None) is not None else 0


@pytest.fixture()
def file_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    # threads need a real file, in-memory sqlite shares one connection
    engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    try:
        yield engine
    finally:
        engine.dispose()


def test_duplicate_status_webhooks_fire_once(
    file_engine: Engine, settings: Settings, make_order: Callable[..., Order]
) -> None:
    store = EventStore(file_engine)
    redis_client = LockingRedis()

    def slow_send(payload: Dict[str, Any]) -> DispatchResult:
        time.sleep(0.05)  # keep the race window open
        return DispatchResult(success=True, status_code=200)

    pixelfly = MagicMock()
    pixelfly.send_event.side_effect = slow_send

    DelayedDispatcher(settings, store, pixelfly).maybe_store_pending_event(
        make_order(1001, "cod")
    )

    def deliver(_: int) -> Optional[FireOutcome]:
        # every delivery is its own request: own dispatcher, own context
        dispatcher = DelayedDispatcher(
            settings, store, pixelfly, lock=RedisFireLock(redis_client)
        )
        return dispatcher.maybe_fire_pending_event(1001, "pending", "processing")

    with ThreadPoolExecutor(max_workers=CONCURRENCY_LEVEL) as pool:
        outcomes = list(pool.map(deliver, range(CONCURRENCY_LEVEL)))

    assert outcomes.count(FireOutcome.FIRED) == 1
    assert pixelfly.send_event.call_count == 1
    assert store.stats().fired == 1


def test_conditional_update_has_one_winner(file_engine: Engine) -> None:
    store = EventStore(file_engine)
    record_id = store.insert(1001, {"event": "purchase"})
    barrier = threading.Barrier(CONCURRENCY_LEVEL)

    def update(_: int) -> bool:
        barrier.wait()
        return store.update_status(record_id, STATUS_FIRED)

    with ThreadPoolExecutor(max_workers=CONCURRENCY_LEVEL) as pool:
        results = list(pool.map(update, range(CONCURRENCY_LEVEL)))

    assert results.count(True) == 1
    assert store.get(record_id).status == STATUS_FIRED
