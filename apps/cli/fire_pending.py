import argparse
import logging
from typing import List, Optional

# make sure the python path reaches core
import os
import sys

sys.path.insert(0, os.getcwd())

from core.cache import RedisFireLock, get_redis_client  # noqa: E402
from core.config import get_settings  # noqa: E402
from core.database import engine  # noqa: E402
from core.log_config import setup_logging  # noqa: E402
from domains.tracking.client import PixelFlyClient  # noqa: E402
from domains.tracking.dispatcher import DelayedDispatcher  # noqa: E402
from domains.tracking.store import EventStore  # noqa: E402

logger = logging.getLogger(__name__)


def build_dispatcher() -> DelayedDispatcher:
    settings = get_settings()
    store = EventStore(engine)
    client = PixelFlyClient(settings, audit=store.log_response)
    lock = RedisFireLock(get_redis_client(), ttl=settings.fire_lock_ttl)
    return DelayedDispatcher(settings, store, client, lock=lock)


def show_stats(dispatcher: DelayedDispatcher) -> None:
    stats = dispatcher.get_stats()
    logger.info(
        f" 📊 pending={stats.pending} fired={stats.fired} "
        f"failed={stats.failed} total={stats.total}"
    )


def fire_all(dispatcher: DelayedDispatcher) -> int:
    stats = dispatcher.get_stats()
    if stats.pending + stats.failed == 0:
        logger.info(" ✅ No pending or failed events. Nothing to fire.")
        return 0

    logger.info(
        f" ♻️ Found {stats.pending} pending and {stats.failed} failed events. Firing..."
    )
    result = dispatcher.fire_all()
    logger.info(
        f" 🎉 Fired {result.fired}, failed {result.failed}, skipped {result.skipped}."
    )
    return 1 if result.failed else 0


def fire_one(dispatcher: DelayedDispatcher, record_id: int) -> int:
    if dispatcher.store.get(record_id) is None:
        logger.error(f" ❌ Event {record_id} not found.")
        return 1
    if dispatcher.fire_event(record_id):
        logger.info(f" ✅ Event {record_id} fired.")
        return 0
    logger.error(f" ❌ Event {record_id} could not be fired.")
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Operate delayed PixelFly purchase events")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--stats", action="store_true", help="print event counts")
    group.add_argument("--fire-all", action="store_true", help="fire pending, retry failed")
    group.add_argument("--fire", type=int, metavar="ID", help="fire one event by id")
    group.add_argument("--delete", type=int, metavar="ID", help="delete one event by id")
    args = parser.parse_args(argv)

    setup_logging(get_settings().debug)
    if not get_settings().is_configured:
        logger.error(" ❌ PIXELFLY_API_KEY is not configured.")
        return 1

    dispatcher = build_dispatcher()
    if args.fire_all:
        return fire_all(dispatcher)
    if args.fire is not None:
        return fire_one(dispatcher, args.fire)
    if args.delete is not None:
        deleted = dispatcher.delete_event(args.delete)
        logger.info(f" 🗑️ Event {args.delete} {'deleted' if deleted else 'not found'}.")
        return 0 if deleted else 1

    show_stats(dispatcher)
    return 0


if __name__ == "__main__":
    sys.exit(main())
