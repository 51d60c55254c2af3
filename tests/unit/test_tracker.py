# tests/unit/test_tracker.py
from typing import Callable
from unittest.mock import MagicMock

from domains.tracking.dispatcher import DelayedDispatcher
from domains.tracking.schemas import DispatchResult, Order, TrackEventPayload
from domains.tracking.store import EventStore
from domains.tracking.tracker import ServerTracker


def test_p1_non_delayed_order_fires_immediately(
    dispatcher: DelayedDispatcher,
    store: EventStore,
    pixelfly: MagicMock,
    make_order: Callable[..., Order],
) -> None:
    tracker = ServerTracker(dispatcher)
    order = make_order(2001, "stripe")

    assert dispatcher.maybe_store_pending_event(order) is None
    assert tracker.server_side_purchase(order, {"_fbp": "fb.1.2.3"}) is True

    pixelfly.send_event.assert_called_once()
    payload = pixelfly.send_event.call_args.args[0]
    assert payload["transaction_id"] == "2001"
    assert payload["user_data"]["fbp"] == "fb.1.2.3"
    assert "is_delayed" not in payload["context"]
    assert store.stats().total == 0
    assert store.get_order(2001).tracked is True


def test_immediate_path_refuses_to_double_fire(
    dispatcher: DelayedDispatcher, pixelfly: MagicMock, make_order: Callable[..., Order]
) -> None:
    order = make_order(2001, "stripe")
    assert ServerTracker(dispatcher).server_side_purchase(order) is True

    # thank-you page reloaded: new request, new tracker
    other = DelayedDispatcher(dispatcher.settings, dispatcher.store, pixelfly)
    assert ServerTracker(other).server_side_purchase(order) is False
    pixelfly.send_event.assert_called_once()


def test_delayed_order_is_left_to_the_dispatcher(
    dispatcher: DelayedDispatcher, pixelfly: MagicMock, make_order: Callable[..., Order]
) -> None:
    assert ServerTracker(dispatcher).server_side_purchase(make_order(1001, "cod")) is False
    pixelfly.send_event.assert_not_called()


def test_failed_immediate_send_leaves_order_untracked(
    dispatcher: DelayedDispatcher,
    store: EventStore,
    pixelfly: MagicMock,
    make_order: Callable[..., Order],
) -> None:
    pixelfly.send_event.return_value = DispatchResult(success=False, error="boom")

    assert ServerTracker(dispatcher).server_side_purchase(make_order(2001, "stripe")) is False
    assert store.is_order_tracked(2001) is False


def test_tracked_flag_blocks_later_delayed_fire(
    dispatcher: DelayedDispatcher,
    store: EventStore,
    pixelfly: MagicMock,
    make_order: Callable[..., Order],
) -> None:
    # the shop switched the order to COD after the immediate send went out
    ServerTracker(dispatcher).server_side_purchase(make_order(2001, "stripe"))
    store.insert(2001, {"event": "purchase", "transaction_id": "2001"})

    fresh = DelayedDispatcher(dispatcher.settings, store, pixelfly)
    assert fresh.maybe_fire_pending_event(2001, "pending", "processing") is None
    pixelfly.send_event.assert_called_once()


def test_track_custom_event(dispatcher: DelayedDispatcher, pixelfly: MagicMock) -> None:
    event = TrackEventPayload(
        event_type="add_to_cart",
        value=19.9,
        currency="EUR",
        items=[{"item_id": "11", "item_name": "Hoodie"}, {"item_name": "no id"}],
        cookies={"_fbp": "fb.1.1.1"},
        fbclid="IwAR1",
    )

    result = ServerTracker(dispatcher).track_event(event)

    assert result["success"] is True
    payload = pixelfly.send_event.call_args.args[0]
    assert payload["event"] == "add_to_cart"
    assert payload["event_id"] == result["event_id"]
    assert payload["event_id"].startswith("event_")
    assert payload["content_ids"] == ["11"]
    assert payload["user_data"]["fbp"] == "fb.1.1.1"
    assert payload["user_data"]["fbc"].endswith(".IwAR1")


def test_track_custom_event_keeps_client_event_id(
    dispatcher: DelayedDispatcher, pixelfly: MagicMock
) -> None:
    result = ServerTracker(dispatcher).track_event(
        TrackEventPayload(event_type="view_item", event_id="view_item_abc")
    )

    assert result["event_id"] == "view_item_abc"
    assert "items" not in pixelfly.send_event.call_args.args[0]
