import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from sqlalchemy.exc import SQLAlchemyError

from core.cache import RedisFireLock, get_redis_client
from core.config import get_settings, normalize_status
from core.database import engine
from core.log_config import setup_logging
from core.security import verify_admin_key, verify_signature
from core.telemetry import instrument_app, setup_telemetry
from domains.tracking.client import PixelFlyClient
from domains.tracking.dedup import (
    CookieMarkerBackend,
    PurchaseMarker,
    RedisMarkerBackend,
    RequestContext,
)
from domains.tracking.dispatcher import DelayedDispatcher
from domains.tracking.payload import build_datalayer_purchase, build_purchase_event
from domains.tracking.schemas import (
    BulkFireResult,
    EventStats,
    OrderPlacedPayload,
    OrderStatusChangedPayload,
    PendingEventOut,
    TrackEventPayload,
)
from domains.tracking.store import EventStore
from domains.tracking.tracker import ServerTracker

settings = get_settings()
setup_logging(settings.debug)
logger = logging.getLogger(__name__)

app = FastAPI(title="pixelfly-relay")

if settings.telemetry_enabled:
    setup_telemetry("pixelfly-relay")
    instrument_app(app, engine)


# Dependency Injection
def get_store() -> EventStore:
    return EventStore(engine)


def get_redis() -> Optional[Any]:
    return get_redis_client()


def get_dispatcher(
    store: EventStore = Depends(get_store),  # noqa: B008
    redis_client: Optional[Any] = Depends(get_redis),  # noqa: B008
) -> DelayedDispatcher:
    # one RequestContext per request, never shared across requests
    current = get_settings()
    client = PixelFlyClient(current, audit=store.log_response)
    lock = RedisFireLock(redis_client, ttl=current.fire_lock_ttl)
    return DelayedDispatcher(current, store, client, lock=lock, context=RequestContext())


def get_tracker(
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> ServerTracker:
    return ServerTracker(dispatcher)


# -------------------------------------------------------------
# shop webhooks
# -------------------------------------------------------------


@app.post("/webhooks/order-placed", tags=["webhook"], dependencies=[Depends(verify_signature)])
def order_placed(
    payload: OrderPlacedPayload,
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
    tracker: ServerTracker = Depends(get_tracker),  # noqa: B008
) -> Dict[str, Any]:
    order = payload.order
    try:
        dispatcher.store.remember_order(
            order.id,
            status=normalize_status(order.status),
            payment_method=order.payment_method,
            order=order,
        )
    except SQLAlchemyError as err:
        # bookkeeping only, the purchase is still enrolled or sent
        logger.warning(f"⚠️ Could not record order {order.id}: {err}")

    try:
        record_id = dispatcher.maybe_store_pending_event(order, payload.cookies)
        sent = False
        if record_id is None:
            sent = tracker.server_side_purchase(order, payload.cookies)

        logger.info(f" [x] Order {order.id} received (delayed={record_id is not None})")
        return {
            "status": "received",
            "delayed": record_id is not None,
            "pending_event_id": record_id,
            "sent": sent,
        }
    except Exception as err:
        logger.error(f"Error: {err}")
        raise HTTPException(status_code=500, detail="Internal Server Error") from err


@app.post(
    "/webhooks/order-status-changed",
    tags=["webhook"],
    dependencies=[Depends(verify_signature)],
)
def order_status_changed(
    payload: OrderStatusChangedPayload,
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> Dict[str, Any]:
    try:
        outcome = dispatcher.maybe_fire_pending_event(
            payload.order_id, payload.old_status, payload.new_status, payload.order
        )
        return {"status": "received", "outcome": outcome.value if outcome else None}
    except Exception as err:
        logger.error(f"Error: {err}")
        raise HTTPException(status_code=500, detail="Internal Server Error") from err


@app.post("/events/track", tags=["events"], dependencies=[Depends(verify_signature)])
def track_event(
    payload: TrackEventPayload,
    tracker: ServerTracker = Depends(get_tracker),  # noqa: B008
) -> Dict[str, Any]:
    return tracker.track_event(payload)


# -------------------------------------------------------------
# thank-you page
# -------------------------------------------------------------


@app.get("/orders/{order_id}/purchase-event", tags=["orders"])
def purchase_event(
    order_id: int,
    request: Request,
    response: Response,
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
    redis_client: Optional[Any] = Depends(get_redis),  # noqa: B008
) -> Dict[str, Any]:
    """
    dataLayer purchase push for the thank-you page.
    push=false means the order is delayed, or this browser (or another
    request) already pushed it.
    """
    order = dispatcher.store.get_order_snapshot(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    event = build_datalayer_purchase(build_purchase_event(order, request.cookies), order)
    if dispatcher.is_enabled_for_order(order):
        return {"order_id": order_id, "push": False, "delayed": True, "data": event}

    marker = PurchaseMarker(
        [RedisMarkerBackend(redis_client), CookieMarkerBackend(request.cookies, response)]
    )
    push = marker.check_and_mark(order_id)
    return {"order_id": order_id, "push": push, "delayed": False, "data": event}


@app.get("/orders/{order_id}/tracking", tags=["orders"])
def get_order_tracking(
    order_id: int,
    store: EventStore = Depends(get_store),  # noqa: B008
) -> Dict[str, Any]:
    tracking = store.get_order(order_id)
    if not tracking:
        return {"order_id": order_id, "status": "UNKNOWN", "tracked": False}
    return {
        "order_id": order_id,
        "status": tracking.status,
        "tracked": tracking.tracked or tracking.server_tracked,
        "fired_at": tracking.fired_at,
        "pending_event_id": tracking.pending_event_id,
    }


# -------------------------------------------------------------
# operator API
# -------------------------------------------------------------


@app.get("/admin/events/stats", tags=["admin"], dependencies=[Depends(verify_admin_key)])
def get_stats(dispatcher: DelayedDispatcher = Depends(get_dispatcher)) -> EventStats:  # noqa: B008
    return dispatcher.get_stats()


@app.get("/admin/events/pending", tags=["admin"], dependencies=[Depends(verify_admin_key)])
def get_pending_events(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> List[PendingEventOut]:
    return dispatcher.get_pending_events(limit, offset)


@app.post("/admin/events/fire-all", tags=["admin"], dependencies=[Depends(verify_admin_key)])
def fire_all_events(
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> BulkFireResult:
    return dispatcher.fire_all()


@app.post(
    "/admin/events/{record_id}/fire", tags=["admin"], dependencies=[Depends(verify_admin_key)]
)
def fire_event(
    record_id: int,
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> Dict[str, Any]:
    if dispatcher.store.get(record_id) is None:
        raise HTTPException(status_code=404, detail="Event not found")
    success = dispatcher.fire_event(record_id)
    return {"success": success, "message": "Event fired" if success else "Failed to fire event"}


@app.delete(
    "/admin/events/{record_id}", tags=["admin"], dependencies=[Depends(verify_admin_key)]
)
def delete_event(
    record_id: int,
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> Dict[str, Any]:
    if not dispatcher.delete_event(record_id):
        raise HTTPException(status_code=404, detail="Event not found")
    return {"success": True}


@app.post("/admin/test-connection", tags=["admin"], dependencies=[Depends(verify_admin_key)])
def test_connection(
    dispatcher: DelayedDispatcher = Depends(get_dispatcher),  # noqa: B008
) -> Dict[str, Any]:
    return dispatcher.client.test_connection()
