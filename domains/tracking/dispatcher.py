import copy
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from core.cache import RedisFireLock
from core.config import Settings, normalize_status
from core.telemetry import get_tracer
from domains.tracking.client import PixelFlyClient
from domains.tracking.dedup import RequestContext
from domains.tracking.model import (
    STATUS_FAILED,
    STATUS_FIRED,
    STATUS_PENDING,
    PendingEvent,
    utc_now,
)
from domains.tracking.payload import build_purchase_event
from domains.tracking.schemas import (
    BulkFireResult,
    DispatchResult,
    EventStats,
    Order,
    PendingEventOut,
)
from domains.tracking.store import EventStore

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

BULK_PAGE_SIZE = 100


def _decode(event_data: str) -> Dict[str, Any]:
    try:
        return json.loads(event_data)
    except ValueError:
        logger.warning("⚠️ [Dispatcher] Stored event data is not valid JSON")
        return {}


class FireTrigger(str, Enum):
    IMMEDIATE = "immediate"
    STATUS_CHANGE = "status_change"
    MANUAL = "manual"
    BULK = "bulk"


@dataclass(frozen=True)
class FireReason:
    trigger: FireTrigger
    status: Optional[str] = None

    @classmethod
    def immediate(cls) -> "FireReason":
        return cls(FireTrigger.IMMEDIATE)

    @classmethod
    def status_change(cls, status: str) -> "FireReason":
        return cls(FireTrigger.STATUS_CHANGE, normalize_status(status))

    @classmethod
    def manual(cls) -> "FireReason":
        return cls(FireTrigger.MANUAL)

    @classmethod
    def bulk(cls) -> "FireReason":
        return cls(FireTrigger.BULK)

    @property
    def fireable_statuses(self) -> Tuple[str, ...]:
        # failed records are only retried by an operator
        if self.trigger in (FireTrigger.MANUAL, FireTrigger.BULK):
            return (STATUS_PENDING, STATUS_FAILED)
        return (STATUS_PENDING,)


class FireOutcome(str, Enum):
    FIRED = "fired"
    FAILED = "failed"
    SKIPPED = "skipped"


def annotate_payload(
    payload: Dict[str, Any], reason: FireReason, now: Optional[int] = None
) -> Dict[str, Any]:
    """
    Mark a stored payload as delayed and move event_time to the send time.
    The first send keeps the original order timestamp, retries don't overwrite it.
    """
    data = copy.deepcopy(payload)
    if reason.trigger is FireTrigger.IMMEDIATE:
        return data

    now = int(time.time()) if now is None else now
    context = data.setdefault("context", {})
    context["is_delayed"] = True
    context.setdefault("original_timestamp", data.get("event_time"))

    if reason.trigger is FireTrigger.STATUS_CHANGE:
        context["delayed_reason"] = f"Order status changed to {reason.status}"
    else:
        context["manual_fire"] = True
        if reason.trigger is FireTrigger.BULK:
            context["bulk_fire"] = True

    data["event_time"] = now
    return data


class DelayedDispatcher:
    """
    Purchase events of cash-on-delivery style orders are held back until the
    order reaches a trigger status, then sent exactly once.

        placed ──> pending ──(trigger status | manual | bulk)──> fired
                      │                                           ^
                      └──────────(send failed)──> failed ──(manual | bulk)
    """

    def __init__(
        self,
        settings: Settings,
        store: EventStore,
        client: PixelFlyClient,
        lock: Optional[RedisFireLock] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.client = client
        self.lock = lock or RedisFireLock(None)
        self.context = context or RequestContext()

    def is_enabled_for_order(self, order: Order) -> bool:
        return self.settings.is_delay_method(order.payment_method)

    # ---------------------------------------------------------------
    # inbound triggers
    # ---------------------------------------------------------------

    def maybe_store_pending_event(
        self, order: Order, cookies: Optional[Mapping[str, str]] = None
    ) -> Optional[int]:
        """
        Enrol a delay-eligible order. Returns the record id, or None when the
        order goes down the immediate path (or could not be stored).
        """
        if not self.settings.is_configured:
            logger.debug(f"[Dispatcher] API key missing, order {order.id} not enrolled")
            return None
        if not self.is_enabled_for_order(order):
            return None

        payload = build_purchase_event(order, cookies)
        try:
            record_id = self.store.insert(order.id, payload)
            self.store.set_pending_event(order.id, record_id)
        except SQLAlchemyError as e:
            # no compensation: the purchase of this order will not be tracked
            logger.error(f"❌ [Dispatcher] Could not store pending event for {order.id}: {e}")
            return None

        logger.info(
            f"⏳ [Dispatcher] Order {order.id} ({order.payment_method}) "
            f"waiting for {self.settings.delayed_fire_on_status}"
        )
        return record_id

    def maybe_fire_pending_event(
        self,
        order_id: int,
        old_status: str,
        new_status: str,
        order: Optional[Order] = None,
    ) -> Optional[FireOutcome]:
        try:
            self.store.remember_order(
                order_id,
                status=normalize_status(new_status),
                payment_method=order.payment_method if order else None,
                order=order,
            )
        except SQLAlchemyError as e:
            logger.warning(f"⚠️ [Dispatcher] Could not record status of {order_id}: {e}")

        if not self.settings.is_configured:
            return None
        if not self.settings.is_trigger_status(new_status):
            logger.debug(
                f"[Dispatcher] {order_id}: {old_status} -> {new_status} is not a trigger"
            )
            return None

        tracking = self.store.get_order(order_id)
        if tracking is not None and (tracking.tracked or tracking.server_tracked):
            logger.info(f" ♻️ [Dispatcher] Order {order_id} already tracked. Skipping.")
            return None

        record = self.store.find_pending_by_order(order_id)
        if record is None:
            return None

        return self.fire(record, FireReason.status_change(new_status))

    # ---------------------------------------------------------------
    # state transition
    # ---------------------------------------------------------------

    def send(self, payload: Dict[str, Any], reason: FireReason) -> DispatchResult:
        return self.client.send_event(annotate_payload(payload, reason))

    def fire(self, record: PendingEvent, reason: FireReason) -> FireOutcome:
        """
        The only place a stored record leaves `pending`/`failed`.
        Shared by the status-change hook and both operator actions.
        """
        if record.id is None:
            raise ValueError("Cannot fire a record that was never stored")

        with tracer.start_as_current_span("pixelfly.fire") as span:
            span.set_attribute("pixelfly.record_id", record.id)
            span.set_attribute("pixelfly.order_id", record.order_id)
            span.set_attribute("pixelfly.trigger", reason.trigger.value)
            outcome = self._fire(record, reason)
            span.set_attribute("pixelfly.outcome", outcome.value)
            return outcome

    def _fire(self, record: PendingEvent, reason: FireReason) -> FireOutcome:
        if record.status not in reason.fireable_statuses:
            logger.info(
                f" ♻️ [Dispatcher] Record {record.id} is {record.status}, "
                f"not fireable by {reason.trigger.value}."
            )
            return FireOutcome.SKIPPED
        if self.context.already_processed(record.order_id):
            logger.info(f" ♻️ [Dispatcher] Order {record.order_id} fired in this request.")
            return FireOutcome.SKIPPED
        if not self.settings.is_configured:
            logger.warning(f"⚠️ [Dispatcher] API key missing, record {record.id} left as is")
            return FireOutcome.SKIPPED
        if not self.lock.acquire(record.id):
            logger.info(f" ♻️ [Dispatcher] Record {record.id} is being fired elsewhere.")
            return FireOutcome.SKIPPED

        try:
            # re-read under the lock, the holder before us may have fired it
            try:
                current = self.store.get(record.id)
            except SQLAlchemyError as e:
                logger.error(f"❌ [Dispatcher] Could not read record {record.id}: {e}")
                return FireOutcome.FAILED
            if current is None or current.status != record.status:
                logger.info(f" ♻️ [Dispatcher] Record {record.id} changed meanwhile. Skipping.")
                return FireOutcome.SKIPPED

            try:
                payload = json.loads(record.event_data)
            except ValueError as e:
                logger.error(f"❌ [Dispatcher] Record {record.id} has corrupt event data: {e}")
                self._set_status(record, STATUS_FAILED, None)
                return FireOutcome.FAILED

            result = self.send(payload, reason)

            fired_at = utc_now()
            new_status = STATUS_FIRED if result.success else STATUS_FAILED
            changed = self._set_status(record, new_status, fired_at)

            if changed is None:
                if result.success:
                    # sent but the record is still open, the order flag keeps
                    # the status-change path from sending it again
                    self.context.mark(record.order_id)
                    self._flag_order(record.order_id, fired_at)
                return FireOutcome.FAILED
            if not changed:
                return FireOutcome.SKIPPED

            if not result.success:
                logger.error(
                    f"❌ [Dispatcher] Order {record.order_id} record {record.id} failed "
                    f"({reason.trigger.value}): {result.error}"
                )
                return FireOutcome.FAILED

            self.context.mark(record.order_id)
            self._flag_order(record.order_id, fired_at)
            logger.info(
                f"✅ [Dispatcher] Fired delayed event for order {record.order_id} "
                f"({reason.trigger.value})."
            )
            return FireOutcome.FIRED
        finally:
            self.lock.release(record.id)

    def _set_status(
        self, record: PendingEvent, new_status: str, fired_at: Optional[datetime]
    ) -> Optional[bool]:
        """CAS from the status we read. None when the database refused the write."""
        try:
            return self.store.update_status(
                record.id, new_status, fired_at=fired_at, expected=(record.status,)
            )
        except SQLAlchemyError as e:
            logger.error(
                f"❌ [Dispatcher] Could not set record {record.id} to {new_status}: {e}"
            )
            return None

    def _flag_order(self, order_id: int, fired_at: datetime) -> None:
        try:
            self.store.mark_server_tracked(order_id, fired_at)
        except SQLAlchemyError as e:
            logger.error(f"❌ [Dispatcher] Could not flag order {order_id}: {e}")

    # ---------------------------------------------------------------
    # operator interface
    # ---------------------------------------------------------------

    def fire_event(self, record_id: int) -> bool:
        try:
            record = self.store.get(record_id)
        except SQLAlchemyError as e:
            logger.error(f"❌ [Dispatcher] Could not load record {record_id}: {e}")
            return False
        if record is None:
            return False
        return self.fire(record, FireReason.manual()) is FireOutcome.FIRED

    def fire_all(self) -> BulkFireResult:
        """Send every pending record and retry every failed one."""
        record_ids: List[int] = []
        offset = 0
        while True:
            page = self.store.list_by_status(
                [STATUS_PENDING, STATUS_FAILED], limit=BULK_PAGE_SIZE, offset=offset
            )
            record_ids.extend(record.id for record, _ in page if record.id is not None)
            if len(page) < BULK_PAGE_SIZE:
                break
            offset += BULK_PAGE_SIZE

        result = BulkFireResult()
        for record_id in record_ids:
            try:
                record = self.store.get(record_id)
            except SQLAlchemyError as e:
                logger.error(f"❌ [Dispatcher] Could not load record {record_id}: {e}")
                result.failed += 1
                continue
            if record is None:
                continue
            outcome = self.fire(record, FireReason.bulk())
            if outcome is FireOutcome.FIRED:
                result.fired += 1
            elif outcome is FireOutcome.FAILED:
                result.failed += 1
            else:
                result.skipped += 1

        logger.info(
            f"🎉 [Dispatcher] Bulk fire done: {result.fired} fired, "
            f"{result.failed} failed, {result.skipped} skipped."
        )
        return result

    def delete_event(self, record_id: int) -> bool:
        return self.store.delete(record_id)

    def get_stats(self) -> EventStats:
        return self.store.stats()

    def get_pending_events(self, limit: int = 50, offset: int = 0) -> List[PendingEventOut]:
        return [
            PendingEventOut(
                id=record.id or 0,
                order_id=record.order_id,
                status=record.status,
                order_status=order_status,
                event_data=_decode(record.event_data),
                created_at=record.created_at,
                fired_at=record.fired_at,
            )
            for record, order_status in self.store.list_pending(limit, offset)
        ]
