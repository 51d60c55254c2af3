# tests/conftest.py
import os
from typing import Any, Callable, Generator
from unittest.mock import MagicMock

import pytest

# must be set before core.config caches the settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TELEMETRY_ENABLED", "false")
os.environ.setdefault("PIXELFLY_API_KEY", "test-key")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("SECRET_KEY", "pixelfly_webhook_secret")

from sqlalchemy import Engine  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from core.config import Settings  # noqa: E402
from core.database import init_db, make_engine  # noqa: E402
from domains.tracking.client import PixelFlyClient  # noqa: E402
from domains.tracking.dispatcher import DelayedDispatcher  # noqa: E402
from domains.tracking.schemas import BillingAddress, DispatchResult, LineItem, Order  # noqa: E402
from domains.tracking.store import EventStore  # noqa: E402


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = make_engine("sqlite://")
    init_db(engine)
    try:
        yield engine
    finally:
        SQLModel.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def store(engine: Engine) -> EventStore:
    return EventStore(engine)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        api_key="test-key",
        endpoint="https://track.example.test/e",
        delayed_payment_methods=["cod", "bacs"],
        delayed_fire_on_status=["processing", "completed"],
    )


@pytest.fixture()
def pixelfly() -> MagicMock:
    """Dispatch client that succeeds unless a test says otherwise."""
    client = MagicMock(spec=PixelFlyClient)
    client.send_event.return_value = DispatchResult(success=True, status_code=200)
    return client


@pytest.fixture()
def dispatcher(settings: Settings, store: EventStore, pixelfly: MagicMock) -> DelayedDispatcher:
    return DelayedDispatcher(settings, store, pixelfly)


@pytest.fixture()
def make_order() -> Callable[..., Order]:
    def factory(order_id: int = 1001, payment_method: str = "cod", **overrides: Any) -> Order:
        data: dict = {
            "id": order_id,
            "status": "pending",
            "payment_method": payment_method,
            "currency": "EUR",
            "subtotal": 59.0,
            "total_tax": 11.21,
            "shipping_total": 4.9,
            "coupon_codes": ["WELCOME10"],
            "items": [
                LineItem(product_id=11, name="Hoodie", price=39.0, quantity=1, category="Tops"),
                LineItem(
                    product_id=12,
                    name="Socks",
                    price=10.0,
                    quantity=2,
                    variant_attributes={"color": "Black", "size": "M"},
                ),
            ],
            "billing": BillingAddress(
                first_name="Ana",
                last_name="Silva",
                email="  Ana.Silva@Example.com ",
                phone="+351 912-345-678",
                city="Lisboa",
                state="LI",
                postcode="1000-001",
                country="pt",
            ),
            "customer_ip_address": "203.0.113.9",
            "customer_user_agent": "Mozilla/5.0",
            "checkout_order_received_url": f"https://shop.test/checkout/order-received/{order_id}/",
            "meta": {"_utm_source": "facebook", "_utm_campaign": "autumn", "_fbclid": "IwAR0"},
        }
        data.update(overrides)
        return Order(**data)

    return factory
