import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import Engine, delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from domains.tracking.model import (
    STATUS_FAILED,
    STATUS_FIRED,
    STATUS_PENDING,
    EventLog,
    OrderTracking,
    PendingEvent,
    utc_now,
)
from domains.tracking.schemas import EventStats, Order

logger = logging.getLogger(__name__)


class EventStore:
    """
    Pending purchase events plus the order-side tracking flags.
    Every method opens its own short session, one request never holds a
    transaction across the PixelFly call.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ---------------------------------------------------------------
    # pending events
    # ---------------------------------------------------------------

    def insert(self, order_id: int, payload: Dict[str, Any]) -> int:
        with Session(self.engine) as session:
            record = PendingEvent(
                order_id=order_id,
                event_data=json.dumps(payload, ensure_ascii=False),
                status=STATUS_PENDING,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            if record.id is None:
                raise RuntimeError(f"No id assigned to pending event of order {order_id}")
            logger.info(f"📥 [Store] Pending event {record.id} stored for order {order_id}")
            return record.id

    def get(self, record_id: int) -> Optional[PendingEvent]:
        with Session(self.engine) as session:
            return session.get(PendingEvent, record_id)

    def find_pending_by_order(self, order_id: int) -> Optional[PendingEvent]:
        with Session(self.engine) as session:
            statement = (
                select(PendingEvent)
                .where(PendingEvent.order_id == order_id)
                .where(PendingEvent.status == STATUS_PENDING)
                .order_by(col(PendingEvent.created_at).desc(), col(PendingEvent.id).desc())
            )
            return session.exec(statement).first()

    def update_status(
        self,
        record_id: int,
        new_status: str,
        fired_at: Optional[datetime] = None,
        expected: Iterable[str] = (STATUS_PENDING,),
    ) -> bool:
        """
        Compare-and-swap: only rows still in one of `expected` are updated.
        Returns False when another request already moved the record.
        """
        now = utc_now()
        statement = (
            update(PendingEvent)
            .where(col(PendingEvent.id) == record_id)
            .where(col(PendingEvent.status).in_(list(expected)))
            .values(status=new_status, fired_at=fired_at or now, updated_at=now)
        )
        with Session(self.engine) as session:
            result = session.connection().execute(statement)
            session.commit()
            changed = bool(result.rowcount)

        if not changed:
            logger.warning(
                f"⚠️ [Store] Record {record_id} no longer in {list(expected)}, "
                f"skip update to {new_status}"
            )
        return changed

    def list_by_status(
        self, statuses: Iterable[str], limit: int = 50, offset: int = 0
    ) -> List[Tuple[PendingEvent, Optional[str]]]:
        """Records joined with the last known order status, newest first."""
        with Session(self.engine) as session:
            statement = (
                select(PendingEvent, OrderTracking.status)
                .join(
                    OrderTracking,
                    col(OrderTracking.order_id) == col(PendingEvent.order_id),
                    isouter=True,
                )
                .where(col(PendingEvent.status).in_(list(statuses)))
                .order_by(col(PendingEvent.created_at).desc(), col(PendingEvent.id).desc())
                .limit(limit)
                .offset(offset)
            )
            return [(record, order_status) for record, order_status in session.exec(statement)]

    def list_pending(
        self, limit: int = 50, offset: int = 0
    ) -> List[Tuple[PendingEvent, Optional[str]]]:
        return self.list_by_status([STATUS_PENDING], limit, offset)

    def count_by_status(self, status: Optional[str] = None) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(PendingEvent)
            if status is not None:
                statement = statement.where(PendingEvent.status == status)
            return int(session.exec(statement).one())

    def stats(self) -> EventStats:
        return EventStats(
            pending=self.count_by_status(STATUS_PENDING),
            fired=self.count_by_status(STATUS_FIRED),
            failed=self.count_by_status(STATUS_FAILED),
            total=self.count_by_status(),
        )

    def delete(self, record_id: int) -> bool:
        with Session(self.engine) as session:
            result = session.connection().execute(
                delete(PendingEvent).where(col(PendingEvent.id) == record_id)
            )
            session.commit()
            deleted = bool(result.rowcount)
        if deleted:
            logger.info(f"🗑️ [Store] Pending event {record_id} deleted")
        return deleted

    # ---------------------------------------------------------------
    # audit log (write only)
    # ---------------------------------------------------------------

    def log_response(
        self,
        payload: Dict[str, Any],
        response_code: Optional[int],
        response_body: Optional[str],
    ) -> None:
        order_id = payload.get("transaction_id")
        with Session(self.engine) as session:
            session.add(
                EventLog(
                    event_type=str(payload.get("event", "unknown"))[:50],
                    event_id=str(payload.get("event_id", ""))[:100],
                    order_id=int(order_id) if str(order_id or "").isdigit() else None,
                    response_code=response_code,
                    response_body=response_body,
                )
            )
            session.commit()

    # ---------------------------------------------------------------
    # order flags
    # ---------------------------------------------------------------

    def get_order(self, order_id: int) -> Optional[OrderTracking]:
        with Session(self.engine) as session:
            return session.get(OrderTracking, order_id)

    def _update_order(self, order_id: int, **values: Any) -> OrderTracking:
        try:
            return self._write_order(order_id, values)
        except IntegrityError:
            # a concurrent first write created the row, apply ours on top of it
            logger.info(f" ♻️ [Store] Order {order_id} row created concurrently, updating.")
            return self._write_order(order_id, values)

    def _write_order(self, order_id: int, values: Dict[str, Any]) -> OrderTracking:
        with Session(self.engine) as session:
            tracking = session.get(OrderTracking, order_id)
            if tracking is None:
                tracking = OrderTracking(order_id=order_id)
            for key, value in values.items():
                setattr(tracking, key, value)
            tracking.updated_at = utc_now()
            session.add(tracking)
            session.commit()
            session.refresh(tracking)
            return tracking

    def remember_order(
        self,
        order_id: int,
        status: Optional[str] = None,
        payment_method: Optional[str] = None,
        order: Optional[Order] = None,
    ) -> OrderTracking:
        values: Dict[str, Any] = {}
        if status is not None:
            values["status"] = status
        if payment_method is not None:
            values["payment_method"] = payment_method
        if order is not None:
            values["order_data"] = order.model_dump_json()
        return self._update_order(order_id, **values)

    def get_order_snapshot(self, order_id: int) -> Optional[Order]:
        tracking = self.get_order(order_id)
        if tracking is None or not tracking.order_data:
            return None
        return Order.model_validate_json(tracking.order_data)

    def set_pending_event(self, order_id: int, record_id: int) -> OrderTracking:
        return self._update_order(order_id, pending_event_id=record_id)

    def mark_tracked(self, order_id: int) -> OrderTracking:
        """Immediate path sent the purchase event."""
        return self._update_order(order_id, tracked=True, server_tracked=True)

    def mark_server_tracked(self, order_id: int, fired_at: datetime) -> OrderTracking:
        """Delayed path sent the purchase event."""
        return self._update_order(order_id, server_tracked=True, fired_at=fired_at)

    def is_order_tracked(self, order_id: int) -> bool:
        tracking = self.get_order(order_id)
        return bool(tracking and (tracking.tracked or tracking.server_tracked))
