import logging
import secrets
import time
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from domains.tracking.dispatcher import DelayedDispatcher, FireReason
from domains.tracking.payload import build_fbc, build_purchase_event
from domains.tracking.schemas import DispatchResult, Order, TrackEventPayload

logger = logging.getLogger(__name__)


def generate_event_id(now: int, prefix: str = "event") -> str:
    return f"{prefix}_{now}_{secrets.token_hex(4)}"


class ServerTracker:
    """Server-side events that are sent right away (non-delayed orders, custom events)."""

    def __init__(self, dispatcher: DelayedDispatcher) -> None:
        self.dispatcher = dispatcher
        self.settings = dispatcher.settings
        self.store = dispatcher.store

    def server_side_purchase(
        self, order: Order, cookies: Optional[Mapping[str, str]] = None
    ) -> bool:
        # 1. nothing to do without credentials
        if not self.settings.is_configured:
            return False

        # 2. order flag is the authoritative guard
        if self.store.is_order_tracked(order.id):
            logger.info(f" ♻️ [Tracker] Order {order.id} already tracked. Skipping.")
            return False
        if self.dispatcher.context.already_processed(order.id):
            return False

        # 3. delay-eligible orders wait for their status change
        if self.dispatcher.is_enabled_for_order(order):
            return False

        payload = build_purchase_event(order, cookies)
        result = self.dispatcher.send(payload, FireReason.immediate())
        if not result.success:
            logger.error(f"❌ [Tracker] Purchase of order {order.id} not delivered.")
            return False

        self.dispatcher.context.mark(order.id)
        try:
            self.store.mark_tracked(order.id)
        except SQLAlchemyError as e:
            # event is out, a later trigger could send it again
            logger.error(f"❌ [Tracker] Could not flag order {order.id} as tracked: {e}")
        logger.info(f"✅ [Tracker] Purchase of order {order.id} sent immediately.")
        return True

    def track_event(self, event: TrackEventPayload) -> Dict[str, Any]:
        """Relay a browser event (view_item, add_to_cart, ...) to PixelFly."""
        now = int(time.time())
        fbc = event.cookies.get("_fbc", "")
        if not fbc and event.fbclid:
            fbc = build_fbc(event.fbclid, now)
        user_data = {"fbp": event.cookies.get("_fbp", ""), "fbc": fbc}

        payload: Dict[str, Any] = {
            "event": event.event_type,
            "event_id": event.event_id or generate_event_id(now),
            "value": float(event.value),
            "currency": event.currency,
            "user_data": {key: value for key, value in user_data.items() if value},
        }
        if event.items:
            payload["items"] = event.items
            payload["content_ids"] = [
                str(item.get("item_id")) for item in event.items if item.get("item_id")
            ]

        result: DispatchResult = self.dispatcher.send(payload, FireReason.immediate())
        return {"success": result.success, "event_id": payload["event_id"]}
